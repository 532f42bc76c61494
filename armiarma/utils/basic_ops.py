"""Small helpers over lists, maps and loosely typed values."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Mapping, Optional

from armiarma.utils.multiaddress import Multiaddr, unmarshal_maddr

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})"
)


def _parse_rfc3339(text: str) -> datetime:
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as RFC 3339 time")
    year, month, day, hour, minute, second = (int(match.group(i)) for i in range(1, 7))
    micro = int(((match.group(7) or "") + "000000")[:6])
    zone = match.group(8)
    try:
        if zone == "Z":
            tz = timezone.utc
        else:
            sign = -1 if zone[0] == "-" else 1
            offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
            tz = timezone(sign * offset)
        return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz)
    except ValueError as exc:
        raise ValueError(f"cannot parse {text!r} as RFC 3339 time: {exc}") from exc


def return_greatest_time(times: Iterable[datetime]) -> datetime:
    """Return the latest of the given times; raises ValueError if there are none."""
    times = list(times)
    if not times:
        raise ValueError("no times given")
    return max(times)


def return_max_int(values: Iterable[int]) -> int:
    """Return the largest of the given integers; raises ValueError if there are none."""
    values = list(values)
    if not values:
        raise ValueError("no values given")
    return max(values)


def _as_strings(items: Optional[Iterable[Any]]) -> List[str]:
    if items is None:
        return []
    result = []
    for item in items:
        if not isinstance(item, str):
            raise TypeError(f"expected a string, got {type(item).__name__}")
        result.append(item)
    return result


def parse_string_array(items: Optional[Iterable[Any]]) -> List[str]:
    """Check that every item is a string and return them as a list."""
    return _as_strings(items)


def parse_time_array(items: Optional[Iterable[Any]]) -> List[datetime]:
    """Parse RFC 3339 timestamps; raises ValueError on the first bad one."""
    return [_parse_rfc3339(item) for item in _as_strings(items)]


def parse_addr_array(items: Optional[Iterable[Any]]) -> List[Multiaddr]:
    """Parse multiaddress strings; raises ValueError on the first bad one."""
    return [unmarshal_maddr(item) for item in _as_strings(items)]


def exists_in_array(items: Iterable[str], value: str) -> bool:
    """Case-insensitive membership test on a list of strings."""
    target = value.lower()
    return any(item.lower() == target for item in items)


def exists_in_map_value(mapping: Mapping[Any, str], value: str) -> bool:
    """Case-insensitive membership test on the values of a mapping."""
    return exists_in_array(mapping.values(), value)


def bytes_from_string(text: str) -> bytes:
    """Return the UTF-8 bytes of a string."""
    return text.encode("utf-8")