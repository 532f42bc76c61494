"""Delay classes applied to peers depending on the outcome of a dial."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, Union

from armiarma.utils.logger import TRACE

logger = logging.getLogger(__name__)


class ConnError(str, Enum):
    """Outcomes of a connection attempt, as recorded by the host."""

    NONE = "None"
    CONNECTION_RESET_BY_PEER = "connection reset by peer"
    CONNECTION_REFUSED = "connection refused"
    CONTEXT_DEADLINE_EXCEEDED = "context deadline exceeded"
    BACK_OFF = "dial backoff"
    REQUESTING_METADATA = "error requesting metadata"
    NO_ROUTE_TO_HOST = "no route to host"
    NETWORK_UNREACHABLE = "unreachable network"
    PEER_ID_MISMATCH = "peer id mismatch"
    SELF_ATTEMPT = "dial to self attempted"
    NO_GOOD_ADDRESSES = "no good addresses"
    IO_TIMEOUT = "i/o timeout"


class Delay(str, Enum):
    POSITIVE = "Positive"
    NEGATIVE_WITH_HOPE = "NegativeWithHope"
    NEGATIVE_WITH_NO_HOPE = "NegativeWithNoHope"
    ZERO = "Zero"
    MINUS1 = "Minus1"
    TIMEOUT = "Timeout"


MAX_DELAY_TIME = timedelta(minutes=2**11)

# Delay classes without an entry here get no delay at all.
INITIAL_DELAY_TIME: Dict[Delay, timedelta] = {
    Delay.POSITIVE: timedelta(minutes=2),
    Delay.NEGATIVE_WITH_HOPE: timedelta(minutes=2),
    Delay.ZERO: timedelta(0),
    Delay.MINUS1: timedelta(hours=-1000),
    Delay.TIMEOUT: timedelta(minutes=32),
}

_ERROR_DELAYS: Dict[str, Delay] = {
    ConnError.NONE.value: Delay.POSITIVE,
    ConnError.CONNECTION_RESET_BY_PEER.value: Delay.NEGATIVE_WITH_HOPE,
    ConnError.CONNECTION_REFUSED.value: Delay.NEGATIVE_WITH_HOPE,
    ConnError.CONTEXT_DEADLINE_EXCEEDED.value: Delay.NEGATIVE_WITH_HOPE,
    ConnError.BACK_OFF.value: Delay.NEGATIVE_WITH_HOPE,
    ConnError.REQUESTING_METADATA.value: Delay.NEGATIVE_WITH_HOPE,
    "unknown": Delay.NEGATIVE_WITH_HOPE,
    ConnError.NO_ROUTE_TO_HOST.value: Delay.NEGATIVE_WITH_NO_HOPE,
    ConnError.NETWORK_UNREACHABLE.value: Delay.NEGATIVE_WITH_NO_HOPE,
    ConnError.PEER_ID_MISMATCH.value: Delay.NEGATIVE_WITH_NO_HOPE,
    ConnError.SELF_ATTEMPT.value: Delay.NEGATIVE_WITH_NO_HOPE,
    ConnError.NO_GOOD_ADDRESSES.value: Delay.NEGATIVE_WITH_NO_HOPE,
    ConnError.IO_TIMEOUT.value: Delay.TIMEOUT,
}


def error_to_delay_type(error: Union[ConnError, str]) -> Delay:
    """Map a connection error to the delay class it earns."""
    key = error.value if isinstance(error, ConnError) else error
    delay = _ERROR_DELAYS.get(key)
    if delay is None:
        logger.log(TRACE, "Default Delay applied, error: %s", key)
        return Delay.NEGATIVE_WITH_HOPE
    return delay


@dataclass
class DelayObject:
    """A delay class together with how many times it has been applied."""

    dtype: Delay
    degree: int = 0

    def increase_degree(self) -> None:
        self.degree += 1

    def set_degree(self, degree: int) -> None:
        self.degree = degree

    def calculate_delay(self) -> timedelta:
        """Return the wait before the next dial.

        Timeouts back off exponentially from the initial delay; a delay too
        large to represent saturates at timedelta.max.
        """
        if self.dtype is not Delay.TIMEOUT:
            return INITIAL_DELAY_TIME.get(self.dtype, timedelta(0))
        if self.degree == 0:
            return timedelta(0)
        exponent = self.degree - 1
        factor = 2**exponent if exponent >= 0 else 0
        try:
            return INITIAL_DELAY_TIME[Delay.TIMEOUT] * factor
        except OverflowError:
            return timedelta.max