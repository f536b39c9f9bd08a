class RoomError(Exception):
    """Base class for room coordination failures."""


class InvalidRoomId(RoomError):
    def __init__(self, room_id: str):
        super().__init__(f"Invalid room id: {room_id!r}")
        self.room_id = room_id


class CapacityExceeded(RoomError):
    def __init__(self, room_id: str, limit: int):
        super().__init__(f"Room {room_id} is full ({limit} participants)")
        self.room_id = room_id
        self.limit = limit


class StoreUnavailable(RoomError):
    """Transient read/write failure against the shared store."""
