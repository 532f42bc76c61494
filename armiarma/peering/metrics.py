"""Gauges describing the peering strategy, grouped into a metrics module."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from armiarma.peering.strategy import PeeringStrategy

logger = logging.getLogger(__name__)

InitFn = Callable[[], None]
UpdateFn = Callable[[], Any]


class _Gauge:
    """A gauge with optional labels, holding the last value set per label set."""

    def __init__(self, namespace: str, name: str, help: str, labels: Tuple[str, ...] = ()) -> None:
        self.namespace = namespace
        self.name = name
        self.help = help
        self.labels = labels
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    @property
    def full_name(self) -> str:
        return f"{self.namespace}_{self.name}"

    def set(self, value: float, *label_values: str) -> None:
        if len(label_values) != len(self.labels):
            raise ValueError(f"{self.full_name} expects {len(self.labels)} label values")
        with self._lock:
            self._values[label_values] = float(value)

    def get(self, *label_values: str) -> Optional[float]:
        with self._lock:
            return self._values.get(label_values)


_REGISTRY: Dict[str, _Gauge] = {}
_REGISTRY_LOCK = threading.Lock()


def _register(gauge: _Gauge) -> None:
    """Register a gauge; a different gauge under the same name is an error."""
    with _REGISTRY_LOCK:
        existing = _REGISTRY.get(gauge.full_name)
        if existing is not None and existing is not gauge:
            raise ValueError(f"duplicate metrics collector registration: {gauge.full_name}")
        _REGISTRY[gauge.full_name] = gauge


PRUNED_ERROR_DISTRIBUTION = _Gauge(
    "peering",
    "pruned_error_distribution",
    "Filter peers in Peer Queue by errors that were tracked",
    ("controldist",),
)
ERROR_ATTEMPT_DISTRIBUTION = _Gauge(
    "peering",
    "iteration_attempts_by_category_distribution",
    "Filter attempts in Peer Queue by errors that were tracked",
    ("controlAttemptdist",),
)
PEERS_ATTEMPTED_IN_LAST_ITERATION = _Gauge(
    "peering",
    "peers_attempted_last_iteration",
    "The number of discovered peers with the crawler",
)
PEERSTORE_ITER_TIME = _Gauge(
    "peering",
    "peerstore_iteration_time_secs",
    "The time that the crawler takes to connect the entire peerstore in secs",
)
CONNECTION_ERROR_DISTRIBUTION = _Gauge(
    "peering",
    "conn_error_distribution",
    "The error distribution of the attempted to connect peers since the last iteration",
    ("error_type",),
)
TOTAL_CONNECTION_ERROR_DISTRIBUTION = _Gauge(
    "peering",
    "total_conn_error_distribution",
    "The total error distribution the active peers",
    ("error_type",),
)


class IndvMetric:
    """One named metric: initialised once, then refreshed on every update."""

    def __init__(self, name: str, init_fn: InitFn, update_fn: UpdateFn) -> None:
        if not name:
            raise ValueError("metric name must not be empty")
        self.name = name
        self._update_fn = update_fn
        init_fn()

    def update(self) -> Any:
        """Refresh the metric and return its current summary."""
        return self._update_fn()


class MetricsModule:
    """A named group of metrics belonging to one part of the crawler."""

    def __init__(self, name: str, details: str = "") -> None:
        self.name = name
        self.details = details
        self.metrics: List[IndvMetric] = []

    def add_indv_metric(self, metric: Optional[IndvMetric]) -> None:
        if metric is None:
            return
        self.metrics.append(metric)

    def update(self) -> Dict[str, Any]:
        """Refresh every metric; return the summaries by metric name."""
        summary: Dict[str, Any] = {}
        for metric in self.metrics:
            try:
                summary[metric.name] = metric.update()
            except Exception as exc:  # one failing metric must not hide the others
                logger.error("unable to update metric %s: %s", metric.name, exc)
        return summary


def _distribution_metric(
    gauge: _Gauge, source: Callable[[], Dict[str, int]]
) -> IndvMetric:
    def update() -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for key, value in source().items():
            gauge.set(value, key)
            summary[key] = value
        return summary

    return IndvMetric(gauge.name, lambda: _register(gauge), update)


def _scalar_metric(gauge: _Gauge, source: Callable[[], Any]) -> IndvMetric:
    def update() -> Any:
        value = source()
        gauge.set(value)
        return value

    return IndvMetric(gauge.name, lambda: _register(gauge), update)


def peering_metrics(strategy: PeeringStrategy) -> MetricsModule:
    """Build the metrics module exporting the state of a peering strategy."""
    module = MetricsModule(
        "peering",
        "internal module of the crawler used for peering and pruning peers",
    )
    builders = [
        lambda: _distribution_metric(PRUNED_ERROR_DISTRIBUTION, strategy.control_distribution),
        lambda: _distribution_metric(
            ERROR_ATTEMPT_DISTRIBUTION, strategy.get_error_attempt_distribution
        ),
        lambda: _scalar_metric(
            PEERS_ATTEMPTED_IN_LAST_ITERATION, strategy.attempted_peers_since_last_iter
        ),
        lambda: _scalar_metric(PEERSTORE_ITER_TIME, strategy.last_iter_time),
        lambda: _distribution_metric(
            CONNECTION_ERROR_DISTRIBUTION, strategy.get_conn_error_distribution
        ),
        lambda: _distribution_metric(
            TOTAL_CONNECTION_ERROR_DISTRIBUTION, strategy.get_total_conn_error_distribution
        ),
    ]
    for build in builders:
        try:
            module.add_indv_metric(build())
        except ValueError as exc:
            logger.error("unable to init metric: %s", exc)
    return module