"""Multiaddress parsing and helpers to pick IPs and ports out of peer addresses."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Tuple, Union

MADDR_SEPARATOR = "/"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

PRIVATE_IP_NETWORKS = (
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
)

_VALUE_PROTOCOLS = frozenset(
    {
        "ip4", "ip6", "ip6zone", "tcp", "udp", "dccp", "sctp",
        "dns", "dns4", "dns6", "dnsaddr", "p2p", "ipfs", "sni",
    }
)
_FLAG_PROTOCOLS = frozenset(
    {
        "quic", "quic-v1", "ws", "wss", "webtransport", "webrtc",
        "webrtc-direct", "tls", "noise", "http", "https",
        "p2p-circuit", "udt", "utp",
    }
)
_PORT_PROTOCOLS = frozenset({"tcp", "udp", "dccp", "sctp"})

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {char: index for index, char in enumerate(_B58_ALPHABET)}

Component = Tuple[str, Optional[str]]


def _validate_value(protocol: str, value: str) -> str:
    if protocol == "ip4":
        try:
            return str(ipaddress.IPv4Address(value))
        except ValueError as exc:
            raise ValueError(f"invalid ip4 address {value!r}") from exc
    if protocol == "ip6":
        if "%" in value:
            raise ValueError(f"invalid ip6 address {value!r}")
        try:
            return str(ipaddress.IPv6Address(value))
        except ValueError as exc:
            raise ValueError(f"invalid ip6 address {value!r}") from exc
    if protocol in _PORT_PROTOCOLS:
        if not re.fullmatch(r"\d+", value) or int(value) > 0xFFFF:
            raise ValueError(f"invalid {protocol} port {value!r}")
        return str(int(value))
    if not value:
        raise ValueError(f"empty value for protocol {protocol}")
    return value


def _parse(text: str) -> Tuple[Component, ...]:
    if not text.startswith(MADDR_SEPARATOR):
        raise ValueError(f"invalid multiaddr {text!r}: must begin with /")
    parts = text.rstrip(MADDR_SEPARATOR).split(MADDR_SEPARATOR)[1:]
    if not parts:
        raise ValueError("empty multiaddr")
    components: List[Component] = []
    tokens: Iterator[str] = iter(parts)
    for name in tokens:
        if name in _FLAG_PROTOCOLS:
            components.append((name, None))
        elif name in _VALUE_PROTOCOLS:
            value = next(tokens, None)
            if value is None:
                raise ValueError(f"unexpected end of multiaddr after {name!r}")
            components.append((name, _validate_value(name, value)))
        else:
            raise ValueError(f"no protocol with name {name!r}")
    return tuple(components)


class Multiaddr:
    """A parsed, validated multiaddress such as /ip4/1.2.3.4/tcp/9000."""

    __slots__ = ("_components",)

    def __init__(self, text: str) -> None:
        self._components = _parse(text)

    @property
    def components(self) -> Tuple[Component, ...]:
        return self._components

    @property
    def protocols(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self._components)

    def value_for(self, protocol: str) -> Optional[str]:
        """Return the value of the first component with the given protocol."""
        for name, value in self._components:
            if name == protocol:
                return value
        return None

    def __str__(self) -> str:
        return "".join(
            f"/{name}" if value is None else f"/{name}/{value}"
            for name, value in self._components
        )

    def __repr__(self) -> str:
        return f"Multiaddr({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Multiaddr):
            return NotImplemented
        return self._components == other._components

    def __hash__(self) -> int:
        return hash(self._components)


@dataclass
class AddrInfo:
    """A peer identifier together with the addresses it can be dialled at."""

    id: str
    addrs: List[Multiaddr] = field(default_factory=list)


def _b58decode(text: str) -> bytes:
    if not text:
        raise ValueError("empty base58 string")
    number = 0
    for char in text:
        try:
            number = number * 58 + _B58_INDEX[char]
        except KeyError:
            raise ValueError(f"invalid base58 character {char!r}") from None
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    padding = len(text) - len(text.lstrip("1"))
    return b"\x00" * padding + body


def _read_uvarint(data: bytes, pos: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


def _decode_peer_id(peer_id: str) -> bytes:
    data = _b58decode(peer_id)
    _, pos = _read_uvarint(data, 0)
    length, pos = _read_uvarint(data, pos)
    if len(data) - pos != length:
        raise ValueError("multihash length does not match its digest")
    return data


def _parse_ip(text: str) -> Optional[IPAddress]:
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def unmarshal_maddr(text: str) -> Multiaddr:
    """Parse a multiaddress from its string form; raises ValueError if invalid."""
    return Multiaddr(text)


def is_ip_public(ip: Union[IPAddress, str, None]) -> bool:
    """Tell whether an IP is outside the private, loopback and unspecified ranges.

    A missing or unparsable IP counts as public.
    """
    if isinstance(ip, str):
        ip = _parse_ip(ip)
    if ip is None:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.is_loopback or ip.is_unspecified:
        return False
    if isinstance(ip, ipaddress.IPv4Address):
        return not any(ip in network for network in PRIVATE_IP_NETWORKS)
    return True


def comp_addr_info(peer_id: str, maddrs: Iterable[Multiaddr]) -> AddrInfo:
    """Build an AddrInfo after checking that the peer id decodes."""
    try:
        _decode_peer_id(peer_id)
    except ValueError as exc:
        raise ValueError(f"unable to compose addr info related to peer: {exc}") from exc
    return AddrInfo(id=peer_id, addrs=list(maddrs))


def extract_ip_from_maddr(maddr: Optional[Multiaddr]) -> Optional[IPAddress]:
    """Return the IP in the second field of a multiaddress, if any."""
    if maddr is None:
        return None
    parts = str(maddr).split(MADDR_SEPARATOR)
    if len(parts) < 3:
        return None
    return _parse_ip(parts[2])


def get_port_from_maddr(maddr: Optional[Multiaddr]) -> int:
    """Return the port in the fourth field of a multiaddress, or -1."""
    if maddr is None:
        return -1
    parts = str(maddr).split(MADDR_SEPARATOR)
    if len(parts) < 5:
        return -1
    port = parts[4]
    if not re.fullmatch(r"[+-]?\d+", port):
        return -1
    return int(port)


def check_valid_ip(ip: str) -> bool:
    """Tell whether the string parses as an IPv4 or IPv6 address."""
    return _parse_ip(ip) is not None


def get_public_addr_from_addr_array(maddrs: Iterable[Multiaddr]) -> Optional[Multiaddr]:
    """Return the first address whose IP is public, or None."""
    for addr in maddrs:
        if is_ip_public(extract_ip_from_maddr(addr)):
            return addr
    return None