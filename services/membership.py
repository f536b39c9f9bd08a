from typing import Any, Dict, Iterable, Optional

from backend import RedisStateStore, StoreConnection, Subscription, state_path
from constants import MAX_ROOM_PARTICIPANTS
from exceptions import CapacityExceeded, RoomError, StoreUnavailable
from logging_config import get_logger
from services.locks import RoomLocks
from services.registry import RoomRegistry, utc_now

logger = get_logger(__name__)


def elect_admin(participants: Dict[str, Dict[str, Any]], exclude: Iterable[str] = ()) -> Optional[str]:
    """Pick the admin every client would pick from the same snapshot.

    An existing admin keeps the role (the lowest id wins when there are
    several); with no admin, the lowest participant id is elected.
    """
    excluded = set(exclude)
    candidates = sorted(pid for pid in participants if pid not in excluded)
    if not candidates:
        return None
    admins = [pid for pid in candidates if participants[pid].get("is_admin")]
    return admins[0] if admins else candidates[0]


class MembershipManager:
    """Joining, leaving, renaming, presence and admin succession."""

    def __init__(self, store: RedisStateStore, registry: RoomRegistry, locks: RoomLocks,
                 max_participants: int = MAX_ROOM_PARTICIPANTS):
        self.store = store
        self.registry = registry
        self.locks = locks
        self.max_participants = max_participants

    async def join(self, room_id: str, participant_id: str, name: str) -> bool:
        try:
            await self.join_or_raise(room_id, participant_id, name)
            return True
        except RoomError as e:
            logger.warning(f"Join of {participant_id} to room {room_id} failed: {e}")
            return False

    async def join_or_raise(self, room_id: str, participant_id: str, name: str) -> None:
        self.registry.validate(room_id)
        if not await self.registry.create_room(room_id):
            raise StoreUnavailable(f"Could not create room {room_id}")

        participant_path = state_path(room_id, "participants", participant_id)
        async with self.locks.hold(room_id):
            existing = await self.store.get(participant_path)
            if existing is not None:
                await self.store.update(participant_path, {"name": name})
                logger.info(f"Participant {participant_id} rejoined room {room_id} as {name!r}")
                return

            participants = await self.store.get(state_path(room_id, "participants")) or {}
            if len(participants) >= self.max_participants:
                raise CapacityExceeded(room_id, self.max_participants)

            revealed = bool(await self.store.get(state_path(room_id, "revealed")))
            is_admin = len(participants) == 0
            await self.store.set(participant_path, {
                "id": participant_id,
                "name": name,
                "selected_card": None,
                "is_revealed": revealed,
                "is_admin": is_admin,
            })
        logger.info(f"Participant {participant_id} ({name!r}) joined room {room_id} "
                    f"({len(participants) + 1}/{self.max_participants}, admin={is_admin})")

    async def rename(self, room_id: str, participant_id: str, name: str) -> bool:
        try:
            await self.store.update(state_path(room_id, "participants", participant_id), {"name": name})
            logger.info(f"Participant {participant_id} in room {room_id} renamed to {name!r}")
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error updating name of {participant_id} in room {room_id}: {e}")
            return False

    async def leave(self, room_id: str, participant_id: str) -> bool:
        try:
            async with self.locks.hold(room_id):
                participants = await self.store.get(state_path(room_id, "participants")) or {}
                leaving = participants.get(participant_id)
                if leaving and leaving.get("is_admin"):
                    successor = elect_admin(
                        {pid: {**p, "is_admin": False} for pid, p in participants.items()},
                        exclude=[participant_id],
                    )
                    if successor is not None:
                        await self._set_admin(room_id, participants, successor)

                await self.store.remove(state_path(room_id, "participants", participant_id))
                await self.store.remove(state_path(room_id, "presence", participant_id))
                await self.store.remove(state_path(room_id, "disconnects", participant_id))
                logger.info(f"Participant {participant_id} removed from room {room_id}")
            if await self.registry.delete_if_empty(room_id):
                self.locks.discard(room_id)
            return True
        except StoreUnavailable as e:
            logger.warning(f"Error removing participant {participant_id} from room {room_id}: {e}")
            return False

    async def setup_presence(self, connection: StoreConnection, room_id: str, participant_id: str) -> None:
        """Flag presence and arrange for the server to clean up after an abrupt disconnect."""
        presence_path = state_path(room_id, "presence", participant_id)

        async def on_connected():
            await self.store.set(presence_path, True)
            connection.register_disconnect_action(presence_path, "remove")
            connection.register_disconnect_action(state_path(room_id, "participants", participant_id), "remove")
            # Peers watching the marker finish what an unconditional write cannot
            connection.register_disconnect_action(state_path(room_id, "disconnects", participant_id), "set", utc_now)
            logger.debug(f"Presence set up for {participant_id} in room {room_id}")

        try:
            await connection.on_connection_established(on_connected)
        except StoreUnavailable as e:
            logger.warning(f"Error setting up presence for {participant_id} in room {room_id}: {e}")

    def watch_disconnects(self, connection: StoreConnection, room_id: str) -> Subscription:
        async def on_markers(markers):
            for participant_id in (markers or {}):
                await self.finalize_disconnect(room_id, participant_id)

        return connection.subscribe(state_path(room_id, "disconnects"), on_markers)

    async def finalize_disconnect(self, room_id: str, participant_id: str) -> None:
        logger.info(f"Disconnect of {participant_id} observed in room {room_id}, finalizing")
        try:
            await self.ensure_admin(room_id)
            if await self.registry.delete_if_empty(room_id):
                self.locks.discard(room_id)
            else:
                await self.store.remove(state_path(room_id, "disconnects", participant_id))
        except StoreUnavailable as e:
            logger.warning(f"Error finalizing disconnect of {participant_id} in room {room_id}: {e}")

    async def transfer_admin_role(self, room_id: str, new_admin_id: str) -> bool:
        try:
            async with self.locks.hold(room_id):
                participants = await self.store.get(state_path(room_id, "participants")) or {}
                if new_admin_id not in participants:
                    logger.warning(f"Cannot transfer admin of room {room_id} to absent participant {new_admin_id}")
                    return False
                await self._set_admin(room_id, participants, new_admin_id)
            return True
        except StoreUnavailable as e:
            logger.error(f"Error transferring admin role in room {room_id}: {e}")
            return False

    async def ensure_admin(self, room_id: str) -> Optional[str]:
        """Restore exactly one admin from the current snapshot. Returns the admin id."""
        async with self.locks.hold(room_id):
            participants = await self.store.get(state_path(room_id, "participants")) or {}
            elected = elect_admin(participants)
            if elected is None:
                return None
            admins = [pid for pid, p in participants.items() if p.get("is_admin")]
            if admins != [elected]:
                logger.info(f"Room {room_id} had admins {admins}, electing {elected}")
                await self._set_admin(room_id, participants, elected)
            return elected

    async def _set_admin(self, room_id: str, participants: Dict[str, Dict[str, Any]], admin_id: str) -> None:
        await self.store.update(
            state_path(room_id, "participants"),
            {pid: {"is_admin": pid == admin_id} for pid in participants},
        )
        logger.info(f"Admin role in room {room_id} transferred to participant: {admin_id}")
