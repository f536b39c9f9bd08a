import asyncio
from typing import Dict


class RoomLocks:
    """One asyncio lock per room id.

    Serializes this process's own writers to a room. Other processes sharing
    the store are not covered.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def hold(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def discard(self, room_id: str) -> None:
        lock = self._locks.get(room_id)
        if lock is not None and not lock.locked():
            del self._locks[room_id]
