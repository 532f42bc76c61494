"""Peering strategies: which peer to dial next and what to record about each dial."""

from __future__ import annotations

import abc
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from armiarma.peering.peer_queue import PeerQueue, PrunedPeer
from armiarma.utils.logger import TRACE
from armiarma.utils.multiaddress import AddrInfo, Multiaddr
from armiarma.utils.useragent import NetworkType

logger = logging.getLogger(__name__)

PRUNE_STRATEGY = "pruning"
DEFAULT_WORKERS = 2000
# Minimum time, in seconds, between two iterations over the peer queue.
MIN_ITER_TIME = 5.0

_POLL = 0.05

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HostInfo:
    """A peer as handed to the peering service: its id, network and addresses."""

    id: str
    network: NetworkType = NetworkType.ETHEREUM
    addrs: List[Multiaddr] = field(default_factory=list)

    def compose_addrs_info(self) -> AddrInfo:
        """Return the id and addresses in the form used for dialling."""
        return AddrInfo(id=self.id, addrs=list(self.addrs))


@dataclass
class ConnectionAttempt:
    """The outcome of one dial to a peer."""

    remote_peer: str
    successful: bool
    error: str
    deprecable: bool = False
    left_network: bool = False
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ConnInfo:
    """A connection being opened with a peer."""

    timestamp: datetime = field(default_factory=_utcnow)
    direction: str = "unknown"


@dataclass
class EndConnInfo:
    """A connection with a peer being closed."""

    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class EventTrace:
    """A single connection or disconnection notified by the host."""

    peer_id: str
    event: Any


@dataclass
class ConnEvent:
    """A connection paired with its disconnection, ready to be stored once both are known."""

    peer_id: str
    conn_info: Optional[ConnInfo] = None
    end_conn_info: Optional[EndConnInfo] = None

    def add_conn_info(self, info: ConnInfo) -> None:
        self.conn_info = info

    def add_disconn(self, info: EndConnInfo) -> None:
        self.end_conn_info = info

    def is_ready_to_persist(self) -> bool:
        return self.conn_info is not None and self.end_conn_info is not None


@dataclass
class IdentificationEvent:
    """A peer that has just been identified by the host."""

    host_info: HostInfo


class _PeerRecord(Protocol):
    id: str
    addrs: Sequence[Multiaddr]
    network: NetworkType


class _StrategyDB(Protocol):
    def get_non_deprecated_peers(self) -> Iterable[_PeerRecord]: ...

    def persist_to_db(self, item: Any) -> None: ...


class PeeringStrategy(abc.ABC):
    """What the peering service needs from a strategy."""

    @abc.abstractmethod
    def run(self) -> "queue.Queue[Optional[HostInfo]]":
        """Start the strategy and return the stream of peers to dial."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the strategy's background work."""

    @abc.abstractmethod
    def type(self) -> str:
        """Name of the strategy."""

    @abc.abstractmethod
    def next_peer(self) -> None:
        """Ask for one more peer on the stream."""

    @abc.abstractmethod
    def new_connection_attempt(self, attempt: ConnectionAttempt) -> None: ...

    @abc.abstractmethod
    def new_connection_event(self, event_trace: EventTrace) -> None: ...

    @abc.abstractmethod
    def new_identification_event(self, ident_event: IdentificationEvent) -> None: ...

    @abc.abstractmethod
    def last_iter_time(self) -> float: ...

    @abc.abstractmethod
    def attempted_peers_since_last_iter(self) -> int: ...

    @abc.abstractmethod
    def control_distribution(self) -> Dict[str, int]: ...

    @abc.abstractmethod
    def get_total_conn_error_distribution(self) -> Dict[str, int]: ...

    @abc.abstractmethod
    def get_error_attempt_distribution(self) -> Dict[str, int]: ...

    @abc.abstractmethod
    def get_conn_error_distribution(self) -> Dict[str, int]: ...


class PruningStrategy(PeeringStrategy):
    """Hands out peers when their delay has passed and penalises peers that fail to answer.

    Peers that go too long without a positive connection are deprecated and
    dropped from the queue. The peer stream ends with None once stopped.
    """

    def __init__(
        self,
        db_client: _StrategyDB,
        network: NetworkType = NetworkType.ETHEREUM,
        *,
        min_iter_time: float = MIN_ITER_TIME,
        workers: int = DEFAULT_WORKERS,
        clock: Clock = _utcnow,
    ) -> None:
        self.network = network
        self.db_client = db_client
        self.peer_queue = PeerQueue(db_client, clock=clock)
        self._min_iter_time = min_iter_time
        self._peer_stream: "queue.Queue[Optional[HostInfo]]" = queue.Queue(maxsize=workers)
        self._next_peer_requests: "queue.Queue[None]" = queue.Queue(maxsize=workers)
        self._events: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.RLock()
        self._last_iter_time = 0.0
        self._attempted_peers: Dict[str, int] = {}
        self._conn_errors: Dict[str, int] = {}

    def type(self) -> str:
        return PRUNE_STRATEGY

    def run(self) -> "queue.Queue[Optional[HostInfo]]":
        """Start the iterator and the event recorder; return the peer stream."""
        if self._threads:
            raise RuntimeError("pruning strategy is already running")
        self._threads = [
            threading.Thread(target=self._iterate_peerstore, name="prun-strgy-itr", daemon=True),
            threading.Thread(target=self._record_events, name="prun-evnt-rec", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self._peer_stream

    def stop(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)

    def next_peer(self) -> None:
        self._next_peer_requests.put(None)

    def new_connection_attempt(self, attempt: ConnectionAttempt) -> None:
        self._events.put(("attempt", attempt))

    def new_connection_event(self, event_trace: EventTrace) -> None:
        self._events.put(("trace", event_trace))

    def new_identification_event(self, ident_event: IdentificationEvent) -> None:
        self._events.put(("ident", ident_event))

    # Metrics

    def last_iter_time(self) -> float:
        """Duration of the last full iteration over the queue, in seconds."""
        with self._lock:
            return self._last_iter_time

    def attempted_peers_since_last_iter(self) -> int:
        with self._lock:
            return sum(self._attempted_peers.values())

    def control_distribution(self) -> Dict[str, int]:
        return self.peer_queue.delay_distribution()

    def get_error_attempt_distribution(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._attempted_peers)

    def get_total_conn_error_distribution(self) -> Dict[str, int]:
        return self.peer_queue.total_conn_error_distribution()

    def get_conn_error_distribution(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._conn_errors)

    # Background work

    def _compose_distributions(self, attempted: Dict[str, PrunedPeer]) -> None:
        delays: Dict[str, int] = {}
        errors: Dict[str, int] = {}
        for peer in attempted.values():
            key = peer.delay_obj.dtype.value
            delays[key] = delays.get(key, 0) + 1
            errors[peer.conn_error] = errors.get(peer.conn_error, 0) + 1
        with self._lock:
            self._attempted_peers = delays
            self._conn_errors = errors

    def _refresh_queue(self) -> None:
        try:
            self.peer_queue.update_peer_list_from_remote_db()
        except Exception as exc:  # the DB layer is external; keep iterating
            logger.error("fail to update pruning peer queue from DB client: %s", exc)

    def _offer(self, host_info: HostInfo) -> bool:
        while not self._stop.is_set():
            try:
                self._peer_stream.put(host_info, timeout=_POLL)
                return True
            except queue.Full:
                continue
        return False

    def _iterate_peerstore(self) -> None:
        logger.debug("peerstore iterator started")
        self._refresh_queue()
        deadline = time.monotonic() + self._min_iter_time
        iter_start = time.monotonic()
        attempted: Dict[str, PrunedPeer] = {}

        while not self._stop.is_set():
            try:
                self._next_peer_requests.get(timeout=_POLL)
            except queue.Empty:
                continue

            call_for_peer = False
            if not self.peer_queue.is_empty() and self.peer_queue.valid_next_peer():
                peer = self.peer_queue.get_next_peer()
                if peer.id in attempted:
                    logger.warning("we already attempted to connect peer %s in the same iteration", peer.id)
                    call_for_peer = True
                else:
                    attempted[peer.id] = peer
                    logger.log(TRACE, "pushing next peer %s into peer stream", peer.id)
                    if not self._offer(HostInfo(peer.id, peer.network, list(peer.addrs))):
                        break
            else:
                if self.peer_queue.is_empty():
                    logger.debug("forcing peerstore update because it's empty")
                else:
                    logger.debug("forcing peerstore update because next peer is not ready to be connected")
                elapsed = time.monotonic() - iter_start
                with self._lock:
                    self._last_iter_time = elapsed
                logger.debug("peerstore iteration of %d peers done in %.3fs", len(attempted), elapsed)

                remaining = deadline - time.monotonic()
                if remaining > 0 and self._stop.wait(remaining):
                    break

                self._compose_distributions(attempted)
                attempted = {}
                self.peer_queue.reset_peer_pointer()
                self._refresh_queue()
                logger.debug("got new peer list with %d", len(self.peer_queue))
                deadline = time.monotonic() + self._min_iter_time
                iter_start = time.monotonic()
                call_for_peer = True

            if call_for_peer:
                self.next_peer()

        try:
            self._peer_stream.put_nowait(None)
        except queue.Full:
            pass
        logger.debug("peerstore iterator closed")

    def _record_events(self) -> None:
        logger.debug("event recorder started")
        buffered: Dict[str, ConnEvent] = {}
        while not self._stop.is_set():
            try:
                kind, item = self._events.get(timeout=_POLL)
            except queue.Empty:
                continue
            if kind == "attempt":
                self._handle_attempt(item)
            elif kind == "trace":
                self._handle_trace(item, buffered)
            else:
                logger.debug("new identification from peer %s", item.host_info.id)
                self.db_client.persist_to_db(item.host_info)
        logger.debug("event recorder closed")

    def _handle_attempt(self, attempt: ConnectionAttempt) -> None:
        peer = self.peer_queue.get_peer(attempt.remote_peer)
        if peer is None:
            outcome = "positive" if attempt.successful else "negative"
            logger.error(
                "received a %s attempt of connection to %s - that was probably deprecated",
                outcome,
                attempt.remote_peer,
            )
            return
        peer.conn_event_handler(attempt.error)
        if peer.deprecable():
            logger.warning("deprecating peer %s", attempt.remote_peer)
            attempt.deprecable = True
            self.peer_queue.remove_peer(attempt.remote_peer)
        self.db_client.persist_to_db(attempt)

    def _handle_trace(self, trace: EventTrace, buffered: Dict[str, ConnEvent]) -> None:
        conn_event = buffered.setdefault(trace.peer_id, ConnEvent(trace.peer_id))
        if isinstance(trace.event, ConnInfo):
            conn_event.add_conn_info(trace.event)
        elif isinstance(trace.event, EndConnInfo):
            conn_event.add_disconn(trace.event)
        else:
            logger.warning("invalid event trace for peer %s - %r", trace.peer_id, trace.event)
        if conn_event.is_ready_to_persist():
            logger.debug("persisting full conn event for peer %s", trace.peer_id)
            del buffered[trace.peer_id]
            self.db_client.persist_to_db(conn_event)