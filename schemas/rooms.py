from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional

Card = Literal["XXS", "XS", "S", "M", "L", "XL", "XXL", "?"]
NotificationKind = Literal["user_left", "admin_transferred", "new_admin"]


class Participant(BaseModel):
    id: str
    name: str
    selected_card: Optional[Card] = None
    is_revealed: bool = False
    is_admin: bool = False

class CountdownState(BaseModel):
    active: bool = False
    started_at: Optional[str] = None
    started_by: Optional[str] = None

class ResetState(BaseModel):
    active: bool = False
    initiated_at: Optional[str] = None
    initiated_by: Optional[str] = None

class Room(BaseModel):
    id: str
    title: str
    revealed: bool = False
    created_at: Optional[str] = None
    countdown: CountdownState = Field(default_factory=CountdownState)
    reset: ResetState = Field(default_factory=ResetState)
    participants: list[Participant] = Field(default_factory=list)
    presence: list[str] = Field(default_factory=list)

    @classmethod
    def from_store(cls, room_id: str, data: Dict[str, Any], default_title: str) -> "Room":
        """Build a room from the flat tree stored under ``rooms/<id>``."""
        return cls(
            id=room_id,
            title=data.get("title") or default_title,
            revealed=bool(data.get("revealed", False)),
            created_at=data.get("created_at"),
            countdown=CountdownState(
                active=bool(data.get("countdown_active", False)),
                started_at=data.get("countdown_started_at"),
                started_by=data.get("countdown_started_by"),
            ),
            reset=ResetState(
                active=bool(data.get("reset_active", False)),
                initiated_at=data.get("reset_initiated_at"),
                initiated_by=data.get("reset_initiated_by"),
            ),
            participants=participants_from_store(data.get("participants")),
            presence=sorted((data.get("presence") or {}).keys()),
        )

class Notification(BaseModel):
    kind: NotificationKind
    message: str
    dismiss_after: int  # seconds


def participants_from_store(data: Optional[Dict[str, Dict[str, Any]]]) -> list[Participant]:
    """Participants in store iteration order; records missing an id or name are skipped."""
    participants = []
    for participant_id, fields in (data or {}).items():
        if "name" not in fields:
            continue
        participants.append(Participant(**{**fields, "id": participant_id}))
    return participants


class CreateRoomResponse(BaseModel):
    room_id: str
    ws_url: str
    title: str

class UpdateTitleRequest(BaseModel):
    title: str = Field(min_length=1, max_length=120)

class RoomDetailsResponse(BaseModel):
    room_id: str
    title: str
    created_at: Optional[str]
    revealed: bool
    participants_count: int
    online_count: int
    max_participants: int
    participants: Optional[list[Participant]] = None
    is_full: bool

class SweepResponse(BaseModel):
    deleted: int
