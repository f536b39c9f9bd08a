from typing import Iterable, Optional

from backend import RedisStateStore, state_path
from constants import CARDS
from exceptions import StoreUnavailable
from logging_config import get_logger
from schemas.rooms import Participant
from services.locks import RoomLocks
from services.registry import utc_now

logger = get_logger(__name__)

_COUNTDOWN_CLEARED = {
    "countdown_active": False,
    "countdown_started_at": None,
    "countdown_started_by": None,
}


def winning_card(participants: Iterable[Participant], revealed: bool) -> Optional[str]:
    """Most selected card(s) once revealed, e.g. ``"M (3 votes)"`` or ``"M / S (2 votes each)"``."""
    if not revealed:
        return None

    counts = {}
    for participant in participants:
        if participant.selected_card is not None:
            counts[participant.selected_card] = counts.get(participant.selected_card, 0) + 1
    if not counts:
        return None

    max_count = max(counts.values())
    winners = [card for card, count in counts.items() if count == max_count]
    if len(winners) > 1:
        return f"{' / '.join(winners)} ({max_count} vote{'s' if max_count != 1 else ''} each)"
    return f"{winners[0]} ({max_count} vote{'s' if max_count != 1 else ''})"


class VotingSession:
    """Card selection and the countdown / reveal / reset cycle of a room.

    Reveal and reset propagate in two steps (room flag, then every
    participant one by one) and are only eventually consistent.
    """

    def __init__(self, store: RedisStateStore, locks: RoomLocks):
        self.store = store
        self.locks = locks

    async def select_card(self, room_id: str, participant_id: str, card: Optional[str]) -> bool:
        # Callers decide whether selecting is allowed right now (revealed, counting down)
        if card is not None and card not in CARDS:
            logger.warning(f"Participant {participant_id} selected unknown card {card!r} in room {room_id}")
            return False
        try:
            await self.store.update(state_path(room_id, "participants", participant_id), {"selected_card": card})
            logger.debug(f"Participant {participant_id} selected {card!r} in room {room_id}")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error selecting card in room {room_id}: {e}")
            return False

    async def start_countdown(self, room_id: str, participant_id: str) -> bool:
        try:
            async with self.locks.hold(room_id):
                if await self.store.get(state_path(room_id, "countdown_active")):
                    logger.info(f"Countdown already running in room {room_id}, ignoring start by {participant_id}")
                    return False
                await self.store.update(state_path(room_id), {
                    "countdown_active": True,
                    "countdown_started_at": utc_now(),
                    "countdown_started_by": participant_id,
                })
            logger.info(f"Countdown started in room {room_id} by {participant_id}")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error starting countdown in room {room_id}: {e}")
            return False

    async def end_countdown(self, room_id: str) -> bool:
        try:
            await self.store.update(state_path(room_id), _COUNTDOWN_CLEARED)
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error ending countdown in room {room_id}: {e}")
            return False

    async def finish_countdown(self, room_id: str, participant_id: str, started_at: str) -> bool:
        """Commit the reveal that ends the countdown identified by ``started_at``.

        The initiator commits; if it has left the room, the admin may commit
        instead. A timer from an older countdown is rejected.
        """
        try:
            async with self.locks.hold(room_id):
                room = await self.store.get(state_path(room_id)) or {}
                if not room.get("countdown_active") or room.get("countdown_started_at") != started_at:
                    logger.info(f"Stale countdown commit by {participant_id} in room {room_id} rejected")
                    return False

                participants = room.get("participants") or {}
                started_by = room.get("countdown_started_by")
                caller = participants.get(participant_id) or {}
                allowed = participant_id == started_by or (
                    started_by not in participants and caller.get("is_admin", False)
                )
                if not allowed:
                    logger.debug(f"Participant {participant_id} may not commit countdown of {started_by}")
                    return False

                await self.store.update(state_path(room_id), _COUNTDOWN_CLEARED)
            logger.info(f"Countdown in room {room_id} finished by {participant_id}, revealing")
            return await self.set_reveal_state(room_id, True)
        except StoreUnavailable as e:
            logger.warning(f"Error finishing countdown in room {room_id}: {e}")
            return False

    async def set_reveal_state(self, room_id: str, revealed: bool) -> bool:
        try:
            await self.store.update(state_path(room_id), {"revealed": revealed})
            participants = await self.store.get(state_path(room_id, "participants")) or {}
            for participant_id in participants:
                await self.store.update(
                    state_path(room_id, "participants", participant_id), {"is_revealed": revealed}
                )
            logger.info(f"Room {room_id} revealed={revealed} for {len(participants)} participants")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error setting reveal state of room {room_id}: {e}")
            return False

    async def reset_cards(self, room_id: str, initiated_by: Optional[str] = None) -> bool:
        try:
            await self.store.update(state_path(room_id), {
                "reset_active": True,
                "reset_initiated_at": utc_now(),
                "reset_initiated_by": initiated_by,
                "revealed": False,
            })
            participants = await self.store.get(state_path(room_id, "participants")) or {}
            for participant_id in participants:
                await self.store.update(
                    state_path(room_id, "participants", participant_id),
                    {"selected_card": None, "is_revealed": False},
                )
            await self.store.update(state_path(room_id), _COUNTDOWN_CLEARED)
            logger.info(f"Cards reset in room {room_id} by {initiated_by}")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error resetting cards in room {room_id}: {e}")
            return False

    async def clear_reset_state(self, room_id: str) -> bool:
        try:
            await self.store.update(state_path(room_id), {
                "reset_active": False,
                "reset_initiated_at": None,
                "reset_initiated_by": None,
            })
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error clearing reset state of room {room_id}: {e}")
            return False
