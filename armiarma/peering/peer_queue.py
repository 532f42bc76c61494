"""Peers waiting to be dialled, kept in the order they become ready."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from armiarma.peering.delays import MAX_DELAY_TIME, Delay, DelayObject, error_to_delay_type
from armiarma.utils.logger import TRACE
from armiarma.utils.multiaddress import Multiaddr
from armiarma.utils.useragent import NetworkType

logger = logging.getLogger(__name__)

# Time after the last positive connection before a peer can be deprecated.
DEPRECATION_TIME = timedelta(days=30)

UNDEFINED_CONN_ERROR = "--"

# Earliest possible moment: peers never attempted are due straight away.
ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PeerRecord(Protocol):
    id: str
    addrs: Sequence[Multiaddr]
    network: NetworkType


class _PeerSource(Protocol):
    def get_non_deprecated_peers(self) -> Iterable[_PeerRecord]: ...


class PrunedPeer:
    """A peer with the delay that decides when it may be dialled again."""

    def __init__(
        self,
        id: str,
        addrs: Optional[Iterable[Multiaddr]] = None,
        network: NetworkType = NetworkType.ETHEREUM,
        delay: Delay = Delay.MINUS1,
        *,
        clock: Clock = _utcnow,
    ) -> None:
        now = clock()
        self.id = id
        self.addrs: List[Multiaddr] = list(addrs or [])
        self.network = network
        self.conn_error = UNDEFINED_CONN_ERROR
        self.delay_obj = DelayObject(delay)
        self.base_connection_timestamp = now
        # Without a positive connection the peer becomes deprecable from creation.
        self.base_deprecation_timestamp = now
        self._clock = clock

    def __repr__(self) -> str:
        return (
            f"PrunedPeer(id={self.id!r}, delay={self.delay_obj.dtype.value}, "
            f"degree={self.delay_obj.degree}, conn_error={self.conn_error!r})"
        )

    def is_ready_for_connection(self) -> bool:
        """Tell whether the next connection time has been reached."""
        return not self._clock() < self.next_connection()

    def next_connection(self) -> datetime:
        """Return when the peer should be dialled next."""
        if self.delay_obj.dtype is Delay.MINUS1:
            return ZERO_TIME
        delay = self.delay_obj.calculate_delay()
        if delay > MAX_DELAY_TIME:
            return self.base_connection_timestamp + MAX_DELAY_TIME
        return self.base_connection_timestamp + delay

    def deprecable(self) -> bool:
        """Tell whether the peer went long enough without a positive connection."""
        return self._clock() - self.base_deprecation_timestamp >= DEPRECATION_TIME

    def conn_event_handler(self, rec_err: str) -> None:
        """React to the outcome of a dial."""
        self.update_delay(rec_err)

    def update_delay(self, rec_err: str) -> None:
        """Re-evaluate the delay after a positive or negative connection event."""
        self.conn_error = rec_err
        new_type = error_to_delay_type(rec_err)
        now = self._clock()
        self.base_connection_timestamp = now
        if self.delay_obj.dtype is not new_type:
            self.delay_obj = DelayObject(new_type)
        if self.delay_obj.dtype is Delay.POSITIVE:
            self.base_deprecation_timestamp = now
        self.delay_obj.increase_degree()


class PeerQueue:
    """Peers sorted by next connection time, also reachable by id."""

    def __init__(self, db_client: Optional[_PeerSource] = None, *, clock: Clock = _utcnow) -> None:
        self._db = db_client
        self._clock = clock
        self._lock = threading.RLock()
        self._pointer = 0
        self._peers: List[PrunedPeer] = []
        self._by_id: Dict[str, PrunedPeer] = {}

    @property
    def pointer(self) -> int:
        """Index of the next peer to hand out."""
        with self._lock:
            return self._pointer

    def peers(self) -> List[PrunedPeer]:
        """Return the queued peers in their current order."""
        with self._lock:
            return list(self._peers)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._peers

    def valid_next_peer(self) -> bool:
        """Tell whether there is a next peer and it is ready to be dialled."""
        with self._lock:
            if self._pointer >= len(self._peers):
                return False
            return self._peers[self._pointer].is_ready_for_connection()

    def get_next_peer(self) -> PrunedPeer:
        """Hand out the next peer and advance; raises IndexError past the end."""
        with self._lock:
            if self._pointer >= len(self._peers):
                raise IndexError("no more peers in the queue")
            peer = self._peers[self._pointer]
            self._pointer += 1
            return peer

    def reset_peer_pointer(self) -> None:
        with self._lock:
            self._pointer = 0

    def is_peer_already(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._by_id

    def add_peer(self, peer: PrunedPeer) -> None:
        """Put a peer at the front of the queue."""
        with self._lock:
            self._peers.insert(0, peer)
            self._by_id[peer.id] = peer

    def remove_peer(self, peer_id: str) -> None:
        """Drop a peer from the queue; an unknown id is ignored."""
        with self._lock:
            if self._by_id.pop(peer_id, None) is None:
                logger.debug("peer %s not in local peerstore", peer_id)
                return
            logger.debug("total len of queue %d - removing peer %s", len(self._peers), peer_id)
            for index, peer in enumerate(self._peers):
                if peer.id == peer_id:
                    del self._peers[index]
                    break
            else:
                logger.debug("unable to find peer %s inside queued peers", peer_id)
                return
            logger.debug("total len of queue %d post removing peer", len(self._peers))

    def get_peer(self, peer_id: str) -> Optional[PrunedPeer]:
        with self._lock:
            return self._by_id.get(peer_id)

    def delay_distribution(self) -> Dict[str, int]:
        """Count the queued peers per delay class."""
        with self._lock:
            distribution: Dict[str, int] = {}
            for peer in self._by_id.values():
                key = peer.delay_obj.dtype.value
                distribution[key] = distribution.get(key, 0) + 1
            return distribution

    def total_conn_error_distribution(self) -> Dict[str, int]:
        """Count the queued peers per last connection error."""
        with self._lock:
            distribution: Dict[str, int] = {}
            for peer in self._by_id.values():
                distribution[peer.conn_error] = distribution.get(peer.conn_error, 0) + 1
            return distribution

    def sort_peer_list(self) -> None:
        """Order the peers so that those due soonest come first."""
        with self._lock:
            self._peers.sort(key=lambda peer: peer.next_connection())

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def update_peer_list_from_remote_db(self) -> None:
        """Add the database's non-deprecated peers that are not queued yet, then sort.

        Errors raised by the database client propagate.
        """
        if self._db is None:
            raise RuntimeError("peer queue has no database client")
        new = 0
        for record in self._db.get_non_deprecated_peers():
            if self.is_peer_already(record.id):
                continue
            new += 1
            logger.log(TRACE, "peer %s not locally, storing it", record.id)
            self.add_peer(
                PrunedPeer(record.id, record.addrs, record.network, Delay.MINUS1, clock=self._clock)
            )
        self.sort_peer_list()
        logger.debug("Num of peers in PeerQueue: %d (%d new)", len(self), new)