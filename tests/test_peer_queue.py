from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from armiarma.peering.delays import MAX_DELAY_TIME, Delay
from armiarma.peering.peer_queue import (
    DEPRECATION_TIME,
    ZERO_TIME,
    PeerQueue,
    PrunedPeer,
)
from armiarma.utils.multiaddress import Multiaddr
from armiarma.utils.useragent import NetworkType


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Record:
    id: str
    addrs: List[Multiaddr] = field(default_factory=list)
    network: NetworkType = NetworkType.ETHEREUM


class FakeDB:
    def __init__(self, records=None, error=None):
        self.records = records or []
        self.error = error

    def get_non_deprecated_peers(self):
        if self.error is not None:
            raise self.error
        return list(self.records)


@pytest.fixture
def clock():
    return FakeClock()


def test_new_peer_is_due_immediately(clock):
    peer = PrunedPeer("p", clock=clock)
    assert peer.next_connection() == ZERO_TIME
    assert peer.is_ready_for_connection() is True
    assert peer.conn_error == "--"


def test_positive_delay_and_deprecation_refresh(clock):
    peer = PrunedPeer("Peer1", delay=Delay.POSITIVE, clock=clock)
    clock.advance(seconds=5)
    peer.conn_event_handler("None")
    assert peer.next_connection() == clock.now + timedelta(minutes=2)
    assert peer.base_deprecation_timestamp == clock.now
    assert peer.is_ready_for_connection() is False
    peer.conn_event_handler("None")
    assert peer.delay_obj.degree == 2
    assert peer.next_connection() == clock.now + timedelta(minutes=2)


@pytest.mark.parametrize(
    "error", ["", "Connection reset by peer", "connection refused", "context deadline exceeded",
              "dial backoff", "error requesting metadata"]
)
def test_negative_with_hope_errors(clock, error):
    peer = PrunedPeer("Peer1", delay=Delay.POSITIVE, clock=clock)
    peer.conn_event_handler(error)
    assert peer.delay_obj.dtype is Delay.NEGATIVE_WITH_HOPE
    assert peer.next_connection() == clock.now + timedelta(minutes=2)


@pytest.mark.parametrize(
    "error", ["no route to host", "unreachable network", "peer id mismatch", "dial to self attempted"]
)
def test_negative_with_no_hope_errors(clock, error):
    peer = PrunedPeer("Peer1", delay=Delay.POSITIVE, clock=clock)
    peer.conn_event_handler(error)
    assert peer.delay_obj.dtype is Delay.NEGATIVE_WITH_NO_HOPE
    assert peer.next_connection() == clock.now
    assert peer.is_ready_for_connection() is True


def test_timeout_backs_off_exponentially_and_caps(clock):
    peer = PrunedPeer("Peer1", delay=Delay.POSITIVE, clock=clock)
    peer.conn_event_handler("error requesting metadata")
    t_now = clock.now
    peer.conn_event_handler("i/o timeout")
    assert peer.next_connection() == t_now + timedelta(minutes=32)
    peer.conn_event_handler("i/o timeout")
    assert peer.next_connection() == t_now + timedelta(minutes=64)
    peer.conn_event_handler("i/o timeout")
    assert peer.next_connection() == t_now + timedelta(minutes=128)
    for _ in range(10):
        peer.conn_event_handler("i/o timeout")
    assert peer.next_connection() == t_now + MAX_DELAY_TIME
    assert peer.conn_error == "i/o timeout"


def test_negative_events_do_not_refresh_deprecation(clock):
    peer = PrunedPeer("Peer1", delay=Delay.POSITIVE, clock=clock)
    start = peer.base_deprecation_timestamp
    clock.advance(seconds=5)
    peer.conn_event_handler("i/o timeout")
    peer.conn_event_handler("no route to host")
    assert peer.base_deprecation_timestamp == start
    assert clock.now - peer.base_deprecation_timestamp > timedelta(seconds=4)
    peer.conn_event_handler("None")
    assert peer.next_connection() == clock.now + timedelta(minutes=2)
    assert peer.base_deprecation_timestamp == clock.now


def test_deprecation(clock):
    peer = PrunedPeer("test", delay=Delay.POSITIVE, clock=clock)
    peer.base_deprecation_timestamp -= DEPRECATION_TIME
    assert peer.deprecable() is True

    peer.conn_event_handler("None")
    assert peer.deprecable() is False

    peer.base_deprecation_timestamp -= DEPRECATION_TIME
    peer.conn_event_handler("error requesting metadata")
    assert peer.deprecable() is True
    peer.conn_event_handler("i/o timeout")
    assert peer.deprecable() is True

    peer.conn_event_handler("None")
    assert peer.deprecable() is False
    peer.conn_event_handler("connection reset by peer")
    assert peer.deprecable() is False
    peer.conn_event_handler("dial to self attempted")
    assert peer.deprecable() is False

    peer.base_deprecation_timestamp -= DEPRECATION_TIME
    for error in ["connection refused", "context deadline exceeded", "no route to host",
                  "peer id mismatch", "rfgdsfghsdfh"]:
        peer.conn_event_handler(error)
        assert peer.deprecable() is True

    peer.conn_event_handler("None")
    assert peer.deprecable() is False


def test_deprecable_after_time_passes(clock):
    peer = PrunedPeer("test", clock=clock)
    clock.advance(days=29)
    assert peer.deprecable() is False
    clock.advance(days=1)
    assert peer.deprecable() is True


def test_add_get_remove(clock):
    queue = PeerQueue(clock=clock)
    assert queue.is_empty() is True
    first = PrunedPeer("a", clock=clock)
    second = PrunedPeer("b", clock=clock)
    queue.add_peer(first)
    queue.add_peer(second)
    assert len(queue) == 2
    assert [p.id for p in queue.peers()] == ["b", "a"]
    assert queue.get_peer("a") is first
    assert queue.get_peer("zzz") is None
    assert queue.is_peer_already("b") is True

    queue.remove_peer("b")
    assert [p.id for p in queue.peers()] == ["a"]
    assert queue.is_peer_already("b") is False
    queue.remove_peer("missing")
    assert len(queue) == 1


def test_pointer_iteration(clock):
    queue = PeerQueue(clock=clock)
    queue.add_peer(PrunedPeer("a", clock=clock))
    queue.add_peer(PrunedPeer("b", clock=clock))
    assert queue.valid_next_peer() is True
    assert queue.get_next_peer().id == "b"
    assert queue.get_next_peer().id == "a"
    assert queue.pointer == 2
    assert queue.valid_next_peer() is False
    with pytest.raises(IndexError):
        queue.get_next_peer()
    queue.reset_peer_pointer()
    assert queue.get_next_peer().id == "b"


def test_valid_next_peer_false_when_not_ready(clock):
    queue = PeerQueue(clock=clock)
    peer = PrunedPeer("a", clock=clock)
    peer.conn_event_handler("None")
    queue.add_peer(peer)
    assert queue.valid_next_peer() is False
    clock.advance(minutes=2)
    assert queue.valid_next_peer() is True


def test_sort_puts_soonest_first(clock):
    queue = PeerQueue(clock=clock)
    late = PrunedPeer("late", clock=clock)
    late.conn_event_handler("i/o timeout")
    soon = PrunedPeer("soon", clock=clock)
    soon.conn_event_handler("None")
    fresh = PrunedPeer("fresh", clock=clock)
    queue.add_peer(fresh)
    queue.add_peer(soon)
    queue.add_peer(late)
    queue.sort_peer_list()
    assert [p.id for p in queue.peers()] == ["fresh", "soon", "late"]


def test_distributions(clock):
    queue = PeerQueue(clock=clock)
    a = PrunedPeer("a", clock=clock)
    b = PrunedPeer("b", clock=clock)
    b.conn_event_handler("i/o timeout")
    c = PrunedPeer("c", clock=clock)
    c.conn_event_handler("i/o timeout")
    for peer in (a, b, c):
        queue.add_peer(peer)
    assert queue.delay_distribution() == {"Minus1": 1, "Timeout": 2}
    assert queue.total_conn_error_distribution() == {"--": 1, "i/o timeout": 2}


def test_update_from_db_adds_only_new_peers(clock):
    addr = Multiaddr("/ip4/1.2.3.4/tcp/9000")
    db = FakeDB([Record("a", [addr]), Record("b")])
    queue = PeerQueue(db, clock=clock)
    existing = PrunedPeer("a", clock=clock)
    existing.conn_event_handler("None")
    queue.add_peer(existing)

    queue.update_peer_list_from_remote_db()
    assert len(queue) == 2
    assert queue.get_peer("a") is existing
    assert queue.get_peer("b").delay_obj.dtype is Delay.MINUS1
    assert [p.id for p in queue.peers()] == ["b", "a"]

    queue.update_peer_list_from_remote_db()
    assert len(queue) == 2


def test_update_from_db_propagates_errors(clock):
    queue = PeerQueue(FakeDB(error=ConnectionError("db down")), clock=clock)
    with pytest.raises(ConnectionError):
        queue.update_peer_list_from_remote_db()
    assert queue.is_empty() is True


def test_update_without_db_raises(clock):
    with pytest.raises(RuntimeError):
        PeerQueue(clock=clock).update_peer_list_from_remote_db()