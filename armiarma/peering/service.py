"""The peering service: dials the peers a strategy hands out and reports every outcome."""

from __future__ import annotations

import logging
import queue
import random
import threading
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from armiarma.peering.delays import ConnError
from armiarma.peering.strategy import (
    DEFAULT_WORKERS,
    ConnectionAttempt,
    EventTrace,
    HostInfo,
    IdentificationEvent,
    PeeringStrategy,
)
from armiarma.utils.logger import TRACE
from armiarma.utils.multiaddress import AddrInfo

logger = logging.getLogger(__name__)

# Seconds a single dial may take before it is given up.
CONNECTION_REFUSE_TIMEOUT = 20.0
MAX_BACKOFF_DURATION = timedelta(minutes=1)
MAX_JITTER = timedelta(milliseconds=500)

_BASE_DELAYS = {
    "io_timeout": timedelta(seconds=5),
    "context_deadline_exceeded": timedelta(seconds=5),
    "connection_refused": timedelta(seconds=5),
    "backoff": timedelta(seconds=10),
    "no_addresses": timedelta(seconds=10),
}
_DEFAULT_BASE_DELAY = timedelta(seconds=2)

_POLL = 0.05


class _Host(Protocol):
    def peers(self) -> Iterable[str]: ...

    def connect(self, addr_info: AddrInfo, timeout: float) -> None: ...

    def conn_events(self) -> "queue.Queue[EventTrace]": ...

    def ident_events(self) -> "queue.Queue[IdentificationEvent]": ...


def _parse_conn_error(exc: BaseException) -> str:
    """Classify a dial failure by the known error text it contains."""
    message = str(exc).lower()
    for error in ConnError:
        if error is not ConnError.NONE and error.value in message:
            return error.value
    return "unknown"


def dynamic_backoff(attempt: int, error_type: str) -> timedelta:
    """Return the wait before retrying a dial: a base delay doubled per attempt, plus jitter."""
    if attempt < 0:
        raise ValueError("attempt must not be negative")
    base = _BASE_DELAYS.get(error_type, _DEFAULT_BASE_DELAY)
    jitter = timedelta(microseconds=random.randrange(MAX_JITTER // timedelta(microseconds=1)))
    return base * (1 << attempt) + jitter


class PeeringService:
    """Dials the peers a strategy hands out with a pool of workers.

    Every dial outcome, and every connection and identification event seen
    by the host, is passed back to the strategy.
    """

    def __init__(
        self,
        host: _Host,
        strategy: Optional[PeeringStrategy],
        *,
        timeout: float = CONNECTION_REFUSE_TIMEOUT,
        workers: int = DEFAULT_WORKERS,
        max_backoff: timedelta = MAX_BACKOFF_DURATION,
        error_parser: Callable[[BaseException], str] = _parse_conn_error,
    ) -> None:
        if strategy is None:
            raise ValueError("given peering strategy is empty")
        logger.info("configuring crawler with peering strategy: %s", strategy.type())
        self.host = host
        self.strategy = strategy
        self.timeout = timeout
        self.workers = workers
        self.max_backoff = max_backoff
        self._error_parser = error_parser
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def run(self) -> None:
        """Start the strategy, the dialling workers and the event recorders."""
        if self._threads:
            raise RuntimeError("peering service is already running")
        logger.info("starting the peering service")
        stream = self.strategy.run()
        self._threads = [
            threading.Thread(
                target=self._peering_worker,
                args=(f"Peering Worker {worker}", stream),
                name=f"peering-worker-{worker}",
                daemon=True,
            )
            for worker in range(1, self.workers + 1)
        ]
        self._threads.append(
            threading.Thread(
                target=self._forward,
                args=(self.host.conn_events(), self.strategy.new_connection_event),
                name="peering-conn-events",
                daemon=True,
            )
        )
        self._threads.append(
            threading.Thread(
                target=self._forward,
                args=(self.host.ident_events(), self.strategy.new_identification_event),
                name="peering-ident-events",
                daemon=True,
            )
        )
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop the workers, the recorders and the strategy."""
        self._stop.set()
        self.strategy.stop()
        for thread in self._threads:
            thread.join(timeout=5)

    def _peering_worker(self, worker_id: str, stream: "queue.Queue[Optional[HostInfo]]") -> None:
        logger.debug("%s launching worker", worker_id)
        self.strategy.next_peer()
        while not self._stop.is_set():
            try:
                next_peer = stream.get(timeout=_POLL)
            except queue.Empty:
                continue
            if next_peer is None:
                # The stream has ended; leave the marker for the other workers.
                try:
                    stream.put_nowait(None)
                except queue.Full:
                    pass
                break
            logger.log(TRACE, "%s -> new peer %s to connect", worker_id, next_peer.id)

            if next_peer.id in set(self.host.peers()):
                logger.log(TRACE, "%s -> peer %s was already connected", worker_id, next_peer.id)
                self.strategy.next_peer()
                continue

            outcome = self._dial(worker_id, next_peer)
            if outcome is None:
                break
            successful, error = outcome
            self.strategy.new_connection_attempt(
                ConnectionAttempt(next_peer.id, successful, error, False, False)
            )
            self.strategy.next_peer()
        logger.info("%s closing", worker_id)

    def _dial(self, worker_id: str, peer: HostInfo) -> Optional[tuple]:
        """Dial until it succeeds or the backoff grows too large; None if stopped."""
        addr_info = peer.compose_addrs_info()
        error = ConnError.NONE.value
        attempts = 0
        logger.debug("%s attempting connection to peer %s", worker_id, peer.id)
        while True:
            try:
                self.host.connect(addr_info, self.timeout)
            except Exception as exc:  # dial failures come from the network layer
                logger.debug(
                    "%s attempt %d failed connection to %s: %s", worker_id, attempts + 1, peer.id, exc
                )
                error = self._error_parser(exc)
                backoff = dynamic_backoff(attempts, error)
                if backoff > self.max_backoff:
                    logger.debug("max backoff duration exceeded, stopping retries for peer %s", peer.id)
                    return False, error
                if self._stop.wait(backoff.total_seconds()):
                    return None
                attempts += 1
                continue
            logger.debug("successful connection to %s", peer.id)
            return True, ConnError.NONE.value

    def _forward(self, source: "queue.Queue", sink: Callable[[object], None]) -> None:
        while not self._stop.is_set():
            try:
                item = source.get(timeout=_POLL)
            except queue.Empty:
                continue
            sink(item)
        logger.debug("closing peering event recorder")