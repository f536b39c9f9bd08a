import asyncio

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from backend import RedisStateStore
from services.engine import RoomEngine
from services.session import RoomSession, SessionTimings

FAST_TIMINGS = SessionTimings(countdown_ticks=3, tick_seconds=0.01, reveal_delay=0.01, reset_clear_delay=0.01)


@pytest.fixture()
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
async def store(redis_client):
    # Single process: local dispatch only, no pub/sub listener tasks
    state_store = RedisStateStore(redis_client, relay_remote=False)
    yield state_store
    await state_store.close()


@pytest.fixture()
def engine(store):
    return RoomEngine(store)


@pytest.fixture()
def make_session(engine):
    sessions = []

    def _make(room_id, participant_id, name, timings=FAST_TIMINGS, room_engine=None):
        session = RoomSession(room_engine or engine, room_id, participant_id, name, timings=timings)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        for task in list(session._tasks):
            task.cancel()


async def settle(store, *sessions, rounds=5):
    """Let deliveries, timers and the writes they trigger run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        await store.drain()
        for session in sessions:
            await session.settle()
    await store.drain()


def drain_events(session):
    events = []
    while not session.events.empty():
        events.append(session.events.get_nowait())
    return events
