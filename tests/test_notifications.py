from schemas.rooms import Participant
from services.notifications import NotificationRelay


def snapshot(*people, admin=None):
    return [Participant(id=pid, name=pid.title(), is_admin=pid == admin) for pid in people]


def messages(notifications):
    return [n.message for n in notifications]


def test_first_snapshot_is_silent():
    relay = NotificationRelay("bob")
    assert relay.process(snapshot("alice", "bob", admin="alice")) == []


def test_departure_of_someone_else():
    relay = NotificationRelay("bob")
    relay.process(snapshot("alice", "bob", "carol", admin="alice"))

    notifications = relay.process(snapshot("alice", "bob", admin="alice"))

    assert messages(notifications) == ["Carol left the room"]
    assert notifications[0].kind == "user_left"
    assert notifications[0].dismiss_after == 4


def test_admin_moving_to_someone_else():
    relay = NotificationRelay("carol")
    relay.process(snapshot("alice", "bob", "carol", admin="alice"))

    notifications = relay.process(snapshot("alice", "bob", "carol", admin="bob"))

    assert messages(notifications) == ["Bob is now the room admin"]
    assert notifications[0].dismiss_after == 3


def test_admin_left_and_role_came_to_me():
    relay = NotificationRelay("bob")
    relay.process(snapshot("alice", "bob", admin="alice"))

    notifications = relay.process(snapshot("bob", admin="bob"))

    assert messages(notifications) == ["Alice left the room", "You are now the room admin!"]
    assert notifications[1].kind == "new_admin"


def test_admin_is_remembered_across_a_snapshot_without_one():
    relay = NotificationRelay("bob")
    relay.process(snapshot("alice", "bob", admin="alice"))

    assert messages(relay.process(snapshot("bob"))) == ["Alice left the room"]
    assert messages(relay.process(snapshot("bob", admin="bob"))) == ["You are now the room admin!"]
    assert relay.process(snapshot("bob", admin="bob")) == []


def test_nothing_while_leaving():
    relay = NotificationRelay("alice")
    relay.process(snapshot("alice", "bob", admin="alice"))
    relay.leaving = True

    assert relay.process(snapshot("bob", admin="bob")) == []

