import random
import re
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from backend import RedisStateStore, Subscription, state_path
from constants import DEFAULT_ROOM_TITLE, MARKER_STALE_SECONDS, ROOM_ID_LENGTH, ROOM_ID_PATTERN
from exceptions import InvalidRoomId, StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

_ROOM_ID_RE = re.compile(ROOM_ID_PATTERN)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_valid_room_id(room_id: Optional[str]) -> bool:
    return bool(room_id) and _ROOM_ID_RE.fullmatch(room_id) is not None


def generate_room_id() -> str:
    return ''.join(random.choices("0123456789abcdef", k=ROOM_ID_LENGTH))


class RoomRegistry:
    """Room ids, creation, titles and the empty-room lifecycle."""

    def __init__(self, store: RedisStateStore, default_title: str = DEFAULT_ROOM_TITLE):
        self.store = store
        self.default_title = default_title

    generate_id = staticmethod(generate_room_id)
    is_valid_room_id = staticmethod(is_valid_room_id)

    def validate(self, room_id: str) -> None:
        if not is_valid_room_id(room_id):
            raise InvalidRoomId(room_id)

    async def create_room(self, room_id: str) -> bool:
        """Create the room unless it already exists. An id collision counts as "exists"."""
        if not is_valid_room_id(room_id):
            logger.warning(f"Invalid room ID format: {room_id!r}")
            return False
        try:
            if await self.store.room_exists(room_id):
                logger.debug(f"Room {room_id} already exists")
                return True
            await self.store.set(state_path(room_id), {
                "title": self.default_title,
                "revealed": False,
                "created_at": utc_now(),
                "countdown_active": False,
                "reset_active": False,
            })
            logger.info(f"Room {room_id} created")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error creating room {room_id}: {e}")
            return False

    async def set_title(self, room_id: str, title: str) -> bool:
        if not is_valid_room_id(room_id):
            logger.warning(f"Refusing to set title of invalid room {room_id!r}")
            return False
        try:
            await self.store.update(state_path(room_id), {"title": title})
            logger.info(f"Room {room_id} title set to {title!r}")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error updating title of room {room_id}: {e}")
            return False

    async def get_title(self, room_id: str) -> str:
        title = await self.store.get(state_path(room_id, "title"))
        return title or self.default_title

    def subscribe_title(self, room_id: str, callback: Callable[[str], Awaitable[None]]) -> Subscription:
        async def on_title(title):
            await callback(title or self.default_title)

        return self.store.subscribe(state_path(room_id, "title"), on_title)

    async def delete_room(self, room_id: str) -> bool:
        try:
            await self.store.remove(state_path(room_id))
            logger.info(f"Room {room_id} deleted")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error deleting room {room_id}: {e}")
            return False

    async def is_room_empty(self, room_id: str) -> bool:
        """True when the room has neither participants nor presence flags. False on store errors."""
        try:
            participants = await self.store.get(state_path(room_id, "participants"))
            presence = await self.store.get(state_path(room_id, "presence"))
        except StoreUnavailable as e:
            logger.warning(f"Error checking if room {room_id} is empty: {e}")
            return False
        return not participants and not presence

    async def delete_if_empty(self, room_id: str) -> bool:
        if not await self.is_room_empty(room_id):
            return False
        logger.info(f"Room {room_id} is empty, deleting")
        return await self.delete_room(room_id)

    async def sweep_stale(self) -> int:
        """Delete every empty room and drop stale disconnect markers from the rest."""
        try:
            room_ids = await self.store.room_ids()
        except StoreUnavailable as e:
            logger.warning(f"Error checking stale rooms: {e}")
            return 0

        deleted = 0
        for room_id in room_ids:
            if await self.delete_if_empty(room_id):
                deleted += 1
            else:
                await self._clear_stale_markers(room_id)
        if deleted:
            logger.info(f"Swept {deleted} stale rooms out of {len(room_ids)}")
        return deleted

    async def _clear_stale_markers(self, room_id: str) -> None:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=MARKER_STALE_SECONDS)
        try:
            markers = await self.store.get(state_path(room_id, "disconnects"))
            for participant_id, marked_at in (markers or {}).items():
                if _parse_time(marked_at) <= cutoff:
                    logger.info(f"Clearing stale disconnect marker of {participant_id} in room {room_id}")
                    await self.store.remove(state_path(room_id, "disconnects", participant_id))
        except StoreUnavailable as e:
            logger.warning(f"Error clearing disconnect markers of room {room_id}: {e}")


def _parse_time(value) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        # Unreadable markers are treated as ancient
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
