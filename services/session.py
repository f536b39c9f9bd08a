import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from backend import state_path
from constants import COUNTDOWN_TICKS, COUNTDOWN_TICK_SECONDS, RESET_CLEAR_DELAY, REVEAL_DELAY_SECONDS
from exceptions import StoreUnavailable
from logging_config import get_logger
from schemas.rooms import CountdownState, Participant, ResetState, Room, participants_from_store
from services.engine import RoomEngine
from services.membership import elect_admin
from services.notifications import NotificationRelay
from services.registry import utc_now
from services.voting import winning_card

logger = get_logger(__name__)


@dataclass
class SessionTimings:
    countdown_ticks: int = COUNTDOWN_TICKS
    tick_seconds: float = COUNTDOWN_TICK_SECONDS
    reveal_delay: float = REVEAL_DELAY_SECONDS
    reset_clear_delay: float = RESET_CLEAR_DELAY


class RoomSession:
    """A connected client's live view of one room.

    Keeps the latest participants and room state, runs this client's copy of
    the countdown and pushes everything worth showing onto ``events``.
    """

    def __init__(self, engine: RoomEngine, room_id: str, participant_id: str, name: str,
                 timings: Optional[SessionTimings] = None, connection_id: Optional[str] = None):
        self.engine = engine
        self.room_id = room_id
        self.participant_id = participant_id
        self.name = name
        self.timings = timings or SessionTimings()
        self.connection = engine.store.connect(connection_id)
        self.relay = NotificationRelay(participant_id)
        self.events: asyncio.Queue = asyncio.Queue()

        self.participants: List[Participant] = []
        self.room: Optional[Room] = None
        self.joined = False
        self.leaving = False

        self._countdown_task: Optional[asyncio.Task] = None
        self._countdown_epoch: Optional[str] = None
        self._finished_epoch: Optional[str] = None
        self._committing = False
        self._tasks = set()

    # Observable state

    @property
    def title(self) -> str:
        return self.room.title if self.room else self.engine.registry.default_title

    @property
    def revealed(self) -> bool:
        return bool(self.room and self.room.revealed)

    @property
    def countdown(self) -> CountdownState:
        return self.room.countdown if self.room else CountdownState()

    @property
    def reset_state(self) -> ResetState:
        return self.room.reset if self.room else ResetState()

    @property
    def me(self) -> Optional[Participant]:
        return next((p for p in self.participants if p.id == self.participant_id), None)

    @property
    def is_admin(self) -> bool:
        return bool(self.me and self.me.is_admin)

    @property
    def is_counting_down(self) -> bool:
        return self._countdown_task is not None or self.countdown.active

    @property
    def winning_card(self) -> Optional[str]:
        return winning_card(self.participants, self.revealed)

    # Lifecycle

    async def enter(self) -> bool:
        membership = self.engine.membership
        if not await membership.join(self.room_id, self.participant_id, self.name):
            self._emit("redirect", new_room_id=self.engine.registry.generate_id())
            await self.connection.close()
            return False
        self.joined = True

        await membership.setup_presence(self.connection, self.room_id, self.participant_id)
        membership.watch_disconnects(self.connection, self.room_id)
        self.connection.subscribe(state_path(self.room_id, "participants"), self._on_participants)
        self.connection.subscribe(state_path(self.room_id), self._on_room)
        self._spawn(self.engine.registry.sweep_stale())
        logger.info(f"Session of {self.participant_id} entered room {self.room_id}")
        return True

    async def leave(self) -> bool:
        """Leave on purpose: no disconnect hooks, admin handed over first."""
        self.leaving = True
        self.relay.leaving = True
        self._cancel_countdown()
        self.connection.cancel_disconnect_actions()
        left = await self.engine.membership.leave(self.room_id, self.participant_id)
        await self.connection.close()
        self.joined = False
        return left

    async def close(self) -> None:
        """Drop the connection without saying goodbye; the disconnect hooks clean up."""
        self._cancel_countdown()
        await self.connection.close()
        self.joined = False
        logger.info(f"Session of {self.participant_id} in room {self.room_id} closed")

    # Actions

    async def select_card(self, card: Optional[str]) -> bool:
        if self.revealed or self.is_counting_down:
            logger.debug(f"Ignoring card selection of {self.participant_id} while revealed or counting down")
            return False
        return await self.engine.voting.select_card(self.room_id, self.participant_id, card)

    async def start_countdown(self) -> bool:
        if self.revealed:
            return await self.hide_cards()
        if self.is_counting_down:
            return False
        return await self.engine.voting.start_countdown(self.room_id, self.participant_id)

    async def hide_cards(self) -> bool:
        return await self.engine.voting.set_reveal_state(self.room_id, False)

    async def reset_cards(self) -> bool:
        self._cancel_countdown()
        if not await self.engine.voting.reset_cards(self.room_id, self.participant_id):
            return False
        self._emit("reset", initiated_by=self.participant_id)
        self._spawn(self._clear_reset_later())
        return True

    async def rename(self, name: str) -> bool:
        self.name = name
        return await self.engine.membership.rename(self.room_id, self.participant_id, name)

    async def set_title(self, title: str) -> bool:
        return await self.engine.registry.set_title(self.room_id, title)

    # Store feeds

    async def _on_participants(self, data: Optional[Dict[str, Any]]) -> None:
        participants = participants_from_store(data)
        for notification in self.relay.process(participants):
            self._emit("notification", **notification.model_dump())
        self.participants = participants
        self._emit(
            "participants",
            participants=[p.model_dump() for p in participants],
            winning_card=self.winning_card,
        )
        await self._heal_admin(participants)

    async def _on_room(self, data: Optional[Dict[str, Any]]) -> None:
        if data is None:
            self.room = None
            return
        room = Room.from_store(self.room_id, data, self.engine.registry.default_title)
        previous, self.room = self.room, room

        if previous is None or _room_view(previous) != _room_view(room):
            self._emit(
                "room",
                title=room.title,
                revealed=room.revealed,
                countdown=room.countdown.model_dump(),
                reset=room.reset.model_dump(),
                winning_card=self.winning_card,
            )

        reset_started = room.reset.active and (previous is None or previous.reset != room.reset)
        if reset_started and room.reset.initiated_by != self.participant_id:
            self._cancel_countdown()
            self._emit("reset", initiated_by=room.reset.initiated_by)

        self._sync_countdown(room.countdown)

    async def _heal_admin(self, participants: List[Participant]) -> None:
        if self.leaving or not participants:
            return
        admins = [p.id for p in participants if p.is_admin]
        if len(admins) == 1:
            return
        elected = elect_admin({p.id: p.model_dump() for p in participants})
        if elected != self.participant_id:
            return
        try:
            await self.engine.membership.ensure_admin(self.room_id)
        except StoreUnavailable as e:
            logger.warning(f"Admin self-heal in room {self.room_id} failed: {e}")

    # Countdown

    def _sync_countdown(self, countdown: CountdownState) -> None:
        if countdown.active:
            if countdown.started_at == self._finished_epoch:
                return
            if self._countdown_task is not None and self._countdown_epoch != countdown.started_at:
                self._cancel_countdown()
            if self._countdown_task is None:
                self._countdown_epoch = countdown.started_at
                self._countdown_task = self._spawn(self._run_countdown(countdown.started_at, countdown.started_by))
        elif self._countdown_task is not None and not self._committing:
            self._cancel_countdown()

    async def _run_countdown(self, started_at: str, started_by: str) -> None:
        try:
            for remaining in range(self.timings.countdown_ticks, 0, -1):
                self._emit("countdown_tick", value=str(remaining), started_by=started_by)
                await asyncio.sleep(self.timings.tick_seconds)
            self._emit("countdown_tick", value="Reveal!", started_by=started_by)
            await asyncio.sleep(self.timings.reveal_delay)

            self._committing = True
            self._finished_epoch = started_at
            self._emit("countdown_finished", started_by=started_by)
            if self.participant_id == started_by or self.is_admin:
                await self.engine.voting.finish_countdown(self.room_id, self.participant_id, started_at)
        finally:
            self._committing = False
            if self._countdown_task is asyncio.current_task():
                self._countdown_task = None
                self._countdown_epoch = None

    def _cancel_countdown(self) -> None:
        task, self._countdown_task = self._countdown_task, None
        self._countdown_epoch = None
        if task is not None and not task.done():
            task.cancel()

    async def _clear_reset_later(self) -> None:
        await asyncio.sleep(self.timings.reset_clear_delay)
        await self.engine.voting.clear_reset_state(self.room_id)

    # Helpers

    def _emit(self, event_type: str, **payload) -> None:
        self.events.put_nowait({
            "type": event_type,
            "room_id": self.room_id,
            "timestamp": utc_now(),
            **payload,
        })

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for this session's background tasks (timers, sweeps) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _room_view(room: Room):
    return room.title, room.revealed, room.countdown, room.reset
