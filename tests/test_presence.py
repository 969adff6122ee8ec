import pytest

from multichat.broadcast import BroadcastHub
from multichat.errors import NotAMember
from multichat.presence import PresenceTracker


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def members():
    return {("c1", "alice"), ("c1", "bob"), ("c2", "alice")}


@pytest.fixture
def tracker(hub, members, clock):
    return PresenceTracker(hub, lambda c, u: (c, u) in members, presence_ttl=45, typing_ttl=5, clock=clock)


def _types(channel):
    return [(e.type, e.payload.get("user_id"), e.payload.get("status", e.payload.get("is_typing"))) for e in channel.drain()]


def test_mark_online_requires_membership(tracker):
    with pytest.raises(NotAMember):
        tracker.mark_online("c1", "mallory", "conn-x")
    assert tracker.list_online("c1") == []


def test_online_until_last_connection_goes(tracker, hub):
    spy = hub.subscribe("spy", "c1")
    tracker.mark_online("c1", "alice", "tab-1")
    tracker.mark_online("c1", "alice", "tab-2")
    tracker.mark_online("c1", "bob", "bob-1")
    assert tracker.list_online("c1") == ["alice", "bob"]

    tracker.mark_offline("c1", "alice", "tab-1")
    assert tracker.list_online("c1") == ["alice", "bob"]
    tracker.mark_offline("c1", "alice", "tab-2")
    assert tracker.list_online("c1") == ["bob"]

    # one online event per user, one offline when the last tab closes
    assert _types(spy) == [
        ("presence_changed", "alice", "online"),
        ("presence_changed", "bob", "online"),
        ("presence_changed", "alice", "offline"),
    ]


def test_drop_connection_leaves_every_conversation(tracker):
    tracker.mark_online("c1", "alice", "ws-1")
    tracker.mark_online("c2", "alice", "ws-1")

    assert tracker.drop_connection("ws-1") == ["c1", "c2"]
    assert tracker.list_online("c1") == []
    assert tracker.list_online("c2") == []
    assert tracker.get_stats() == {"conversations": 0, "connections": 0, "users": 0}


def test_silent_connection_is_reclaimed_after_ttl(tracker, hub, clock):
    spy = hub.subscribe("spy", "c1")
    tracker.mark_online("c1", "alice", "ws-a")
    tracker.mark_online("c1", "bob", "ws-b")
    spy.drain()

    clock.advance(30)
    assert tracker.heartbeat("ws-b") == 1
    clock.advance(20)

    # alice's process vanished without a disconnect; she is no longer listed
    assert tracker.list_online("c1") == ["bob"]
    assert tracker.sweep_expired() == 1
    assert _types(spy) == [("presence_changed", "alice", "offline")]
    assert tracker.get_stats()["connections"] == 1


def test_typing_expires_on_its_own(tracker, hub, clock):
    spy = hub.subscribe("spy", "c1")
    tracker.mark_online("c1", "alice", "ws-a")
    spy.drain()

    assert tracker.set_typing("c1", "alice", True) is True
    # repeated keystrokes only refresh the flag
    assert tracker.set_typing("c1", "alice", True) is True
    assert tracker.list_typing("c1") == ["alice"]

    clock.advance(6)
    assert tracker.list_typing("c1") == []
    tracker.sweep_expired()
    assert _types(spy) == [
        ("typing_changed", "alice", True),
        ("typing_changed", "alice", False),
    ]


def test_typing_needs_a_live_connection(tracker):
    assert tracker.set_typing("c1", "bob", True) is False
    assert tracker.list_typing("c1") == []


def test_going_offline_clears_typing(tracker, hub):
    spy = hub.subscribe("spy", "c1")
    tracker.mark_online("c1", "alice", "ws-a")
    tracker.set_typing("c1", "alice", True)
    spy.drain()

    tracker.mark_offline("c1", "alice")
    assert _types(spy) == [
        ("presence_changed", "alice", "offline"),
        ("typing_changed", "alice", False),
    ]


def test_drop_user_unsubscribes_their_connections(tracker, hub):
    hub.subscribe("ws-a", "c1")
    tracker.mark_online("c1", "alice", "ws-a")

    assert tracker.drop_user("c1", "alice") == 1
    assert "ws-a" not in hub.subscribers("c1")
    assert tracker.list_online("c1") == []


def test_clear_forgets_everything(tracker):
    tracker.mark_online("c1", "alice", "ws-a")
    tracker.mark_online("c1", "bob", "ws-b")
    assert tracker.get_stats() == {"conversations": 1, "connections": 2, "users": 2}

    tracker.clear()
    assert tracker.get_stats() == {"conversations": 0, "connections": 0, "users": 0}
    assert tracker.list_online("c1") == []
