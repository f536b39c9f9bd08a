import asyncio

from backend import state_path
from conftest import drain_events, settle
from services.engine import RoomEngine
from services.registry import is_valid_room_id
from services.session import SessionTimings

ROOM = "0a1b2c3d"


def of_type(events, event_type):
    return [e for e in events if e["type"] == event_type]


def notification_messages(events):
    return [e["message"] for e in of_type(events, "notification")]


async def enter_all(store, *sessions):
    for session in sessions:
        assert await session.enter()
        await settle(store, *sessions)


async def test_two_participants_vote_and_reveal(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    bob = make_session(ROOM, "bob", "Bob")
    await enter_all(store, alice, bob)

    assert alice.is_admin and not bob.is_admin
    assert [p.id for p in bob.participants] == ["alice", "bob"]
    assert bob.title == "default"

    assert await alice.select_card("M")
    assert await bob.select_card("M")
    await settle(store, alice, bob)
    assert alice.winning_card is None

    drain_events(alice)
    assert await alice.start_countdown()
    await settle(store, alice, bob)

    for session in (alice, bob):
        assert session.revealed
        assert not session.is_counting_down
        assert session.winning_card == "M (2 votes)"
        assert all(p.is_revealed for p in session.participants)
    ticks = [e["value"] for e in of_type(drain_events(alice), "countdown_tick")]
    assert ticks == ["3", "2", "1", "Reveal!"]

    # Cards are locked while revealed
    assert not await bob.select_card("S")


async def test_split_vote_reveal_then_reset(store, make_session):
    room_id = "a1b2c3d4"
    alice = make_session(room_id, "alice", "Alice")
    bob = make_session(room_id, "bob", "Bob")
    await enter_all(store, alice, bob)
    assert alice.is_admin and not bob.is_admin

    assert await alice.select_card("M")
    assert await bob.select_card("S")
    assert await alice.start_countdown()
    await settle(store, alice, bob)

    for session in (alice, bob):
        assert session.revealed
        assert all(p.is_revealed for p in session.participants)
        assert session.winning_card == "M / S (1 vote each)"

    loop = asyncio.get_running_loop()
    reset_at = loop.time()
    assert await alice.reset_cards()
    await settle(store, alice, bob)

    assert loop.time() - reset_at < 1.0
    for session in (alice, bob):
        assert not session.revealed
        assert all(p.selected_card is None and not p.is_revealed for p in session.participants)
    room = await store.get(state_path(room_id))
    assert room["revealed"] is False
    for participant in room["participants"].values():
        assert "selected_card" not in participant
        assert participant["is_revealed"] is False


async def test_reset_by_one_participant_reaches_everyone(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    slow_clear = SessionTimings(tick_seconds=0.01, reveal_delay=0.01, reset_clear_delay=0.2)
    bob = make_session(ROOM, "bob", "Bob", timings=slow_clear)
    await enter_all(store, alice, bob)
    await alice.select_card("L")
    await alice.start_countdown()
    await settle(store, alice, bob)
    drain_events(alice)

    assert await bob.reset_cards()
    await settle(store, alice, bob)

    resets = of_type(drain_events(alice), "reset")
    assert [e["initiated_by"] for e in resets] == ["bob"]
    for session in (alice, bob):
        assert not session.revealed
        assert session.winning_card is None
        assert all(p.selected_card is None for p in session.participants)
        # The reset marker is cleared again shortly after
        assert not session.reset_state.active


async def test_countdown_cannot_be_started_twice(store, make_session):
    slow = SessionTimings(tick_seconds=0.05, reveal_delay=0.05, reset_clear_delay=0.01)
    alice = make_session(ROOM, "alice", "Alice", timings=slow)
    bob = make_session(ROOM, "bob", "Bob", timings=slow)
    await enter_all(store, alice, bob)

    assert await alice.start_countdown()
    await store.drain()
    assert bob.is_counting_down
    assert not await bob.start_countdown()
    assert not await bob.select_card("S")
    await settle(store, alice, bob)
    assert bob.revealed

    # Starting again once revealed hides the cards
    assert await bob.start_countdown()
    await settle(store, alice, bob)
    assert not alice.revealed


async def test_admin_finishes_countdown_of_a_closed_initiator(store, make_session):
    slow = SessionTimings(countdown_ticks=2, tick_seconds=0.05, reveal_delay=0.05, reset_clear_delay=0.01)
    alice = make_session(ROOM, "alice", "Alice", timings=slow)
    bob = make_session(ROOM, "bob", "Bob", timings=slow)
    await enter_all(store, alice, bob)

    assert await bob.start_countdown()
    await store.drain()
    await bob.close()
    await settle(store, alice)

    assert alice.revealed
    assert [p.id for p in alice.participants] == ["alice"]


async def test_admin_disconnect_promotes_the_remaining_participant(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    bob = make_session(ROOM, "bob", "Bob")
    await enter_all(store, alice, bob)
    drain_events(bob)

    await alice.close()
    await settle(store, bob)

    assert bob.is_admin
    assert [p.id for p in bob.participants] == ["bob"]
    assert notification_messages(drain_events(bob)) == ["Alice left the room", "You are now the room admin!"]
    assert await store.get(state_path(ROOM, "presence")) == {"bob": True}
    # The peer consumed the disconnect marker
    assert await store.get(state_path(ROOM, "disconnects")) == {}


async def test_graceful_leave(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    bob = make_session(ROOM, "bob", "Bob")
    carol = make_session(ROOM, "carol", "Carol")
    await enter_all(store, alice, bob, carol)
    drain_events(carol)

    assert await alice.leave()
    await settle(store, bob, carol)

    assert bob.is_admin
    assert sorted(notification_messages(drain_events(carol))) == ["Alice left the room", "Bob is now the room admin"]
    assert await store.get(state_path(ROOM, "disconnects")) == {}

    await bob.leave()
    await carol.leave()
    assert not await store.room_exists(ROOM)


async def test_full_room_redirects(store, make_session):
    engine = RoomEngine(store, max_participants=1)
    alice = make_session(ROOM, "alice", "Alice", room_engine=engine)
    bob = make_session(ROOM, "bob", "Bob", room_engine=engine)
    assert await alice.enter()

    assert not await bob.enter()

    event = bob.events.get_nowait()
    assert event["type"] == "redirect"
    assert is_valid_room_id(event["new_room_id"])
    assert not bob.joined
    await settle(store, alice)
    assert [p.id for p in alice.participants] == ["alice"]


async def test_late_joiner_sees_revealed_cards(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    await enter_all(store, alice)
    await alice.select_card("XS")
    await alice.start_countdown()
    await settle(store, alice)

    carol = make_session(ROOM, "carol", "Carol")
    await enter_all(store, alice, carol)

    assert carol.revealed
    assert carol.me.is_revealed
    assert carol.winning_card == "XS (1 vote)"


async def test_title_and_rename_are_shared(store, make_session):
    alice = make_session(ROOM, "alice", "Alice")
    bob = make_session(ROOM, "bob", "Bob")
    await enter_all(store, alice, bob)

    assert await alice.set_title("Sprint 42")
    assert await bob.rename("Robert")
    await settle(store, alice, bob)

    assert bob.title == "Sprint 42"
    assert [p.name for p in alice.participants] == ["Alice", "Robert"]
    rooms = of_type(drain_events(bob), "room")
    assert rooms[-1]["title"] == "Sprint 42"
