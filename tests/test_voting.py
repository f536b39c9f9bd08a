import pytest

from backend import state_path
from schemas.rooms import Participant
from services.voting import winning_card

ROOM = "0a1b2c3d"


def voters(*cards):
    return [Participant(id=f"p{i}", name=f"P{i}", selected_card=card) for i, card in enumerate(cards)]


@pytest.mark.parametrize("cards,revealed,expected", [
    (("M", "M", "S"), False, None),
    ((), True, None),
    ((None, None), True, None),
    (("L",), True, "L (1 vote)"),
    (("M", "M", "S"), True, "M (2 votes)"),
    (("M", "M", "M", "S"), True, "M (3 votes)"),
    (("M", "M", "S", "S"), True, "M / S (2 votes each)"),
    (("M", "S", "S", "M", None), True, "M / S (2 votes each)"),
    (("M", None, "S", None), True, "M / S (1 vote each)"),
    (("?", "?", "XL"), True, "? (2 votes)"),
])
def test_winning_card(cards, revealed, expected):
    assert winning_card(voters(*cards), revealed) == expected


async def room_state(store):
    return await store.get(state_path(ROOM))


@pytest.fixture()
async def room(engine):
    await engine.membership.join(ROOM, "alice", "Alice")
    await engine.membership.join(ROOM, "bob", "Bob")
    return ROOM


async def test_select_card(engine, store, room):
    assert await engine.voting.select_card(room, "bob", "XL")
    assert not await engine.voting.select_card(room, "bob", "XXXL")
    assert (await room_state(store))["participants"]["bob"]["selected_card"] == "XL"

    assert await engine.voting.select_card(room, "bob", None)
    assert "selected_card" not in (await room_state(store))["participants"]["bob"]


async def test_second_countdown_start_is_ignored(engine, store, room):
    assert await engine.voting.start_countdown(room, "bob")
    first = await room_state(store)

    assert not await engine.voting.start_countdown(room, "alice")

    state = await room_state(store)
    assert state["countdown_active"] is True
    assert state["countdown_started_by"] == "bob"
    assert state["countdown_started_at"] == first["countdown_started_at"]


async def test_initiator_commits_reveal(engine, store, room):
    await engine.voting.select_card(room, "alice", "S")
    await engine.voting.start_countdown(room, "bob")
    started_at = (await room_state(store))["countdown_started_at"]

    # Neither a stale epoch nor a non-initiator may commit
    assert not await engine.voting.finish_countdown(room, "bob", "1999-01-01T00:00:00+00:00")
    assert not await engine.voting.finish_countdown(room, "alice", started_at)
    assert (await room_state(store))["revealed"] is False

    assert await engine.voting.finish_countdown(room, "bob", started_at)

    state = await room_state(store)
    assert state["revealed"] is True
    assert state["countdown_active"] is False
    assert "countdown_started_at" not in state
    assert all(p["is_revealed"] for p in state["participants"].values())
    # The same epoch cannot be committed twice
    assert not await engine.voting.finish_countdown(room, "bob", started_at)


async def test_admin_commits_when_initiator_left(engine, store, room):
    await engine.voting.start_countdown(room, "bob")
    started_at = (await room_state(store))["countdown_started_at"]
    await engine.membership.leave(room, "bob")

    assert await engine.voting.finish_countdown(room, "alice", started_at)
    assert (await room_state(store))["revealed"] is True


async def test_hide_cards(engine, store, room):
    await engine.voting.set_reveal_state(room, True)
    assert await engine.voting.set_reveal_state(room, False)

    state = await room_state(store)
    assert state["revealed"] is False
    assert not any(p["is_revealed"] for p in state["participants"].values())


async def test_reset_cards(engine, store, room):
    await engine.voting.select_card(room, "alice", "M")
    await engine.voting.select_card(room, "bob", "L")
    await engine.voting.set_reveal_state(room, True)
    await engine.voting.start_countdown(room, "alice")

    assert await engine.voting.reset_cards(room, "bob")

    state = await room_state(store)
    assert state["revealed"] is False
    assert state["countdown_active"] is False
    assert state["reset_active"] is True
    assert state["reset_initiated_by"] == "bob"
    for participant in state["participants"].values():
        assert "selected_card" not in participant
        assert participant["is_revealed"] is False

    assert await engine.voting.clear_reset_state(room)
    state = await room_state(store)
    assert state["reset_active"] is False
    assert "reset_initiated_by" not in state


async def test_end_countdown(engine, store, room):
    await engine.voting.start_countdown(room, "alice")
    assert await engine.voting.end_countdown(room)
    assert (await room_state(store))["countdown_active"] is False
    assert await engine.voting.start_countdown(room, "bob")
