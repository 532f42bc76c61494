"""Parsing of libp2p user agents into client name, version, OS and architecture."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


class NetworkType(str, Enum):
    ETHEREUM = "Ethereum CL"
    IPFS = "IPFS"
    FILECOIN = "Filecoin"


class ClientName(str, Enum):
    PRYSM = "prysm"
    LIGHTHOUSE = "lighthouse"
    TEKU = "teku"
    NIMBUS = "nimbus"
    LODESTAR = "lodestar"
    GRANDINE = "grandine"
    CORTEX = "cortze"
    TRINITY = "trinity"
    ERIGON = "erigon"
    KUBO = "kubo"
    GO_IPFS = "go-ipfs"
    HYDRA_BOOSTER = "hydra-booster"
    STORM = "storm"
    IOI = "ioi"
    PUNCHR = "punchr"
    LOTUS = "lotus"
    OTHERS = "Others"
    UNKNOWN = UNKNOWN


class ClientOS(str, Enum):
    MAC = "mac"
    WINDOWS = "windows"
    LINUX = "linux"
    UNKNOWN = UNKNOWN


class ClientArch(str, Enum):
    ARM = "arm"
    X86_64 = "x86_64"
    UNKNOWN = UNKNOWN


ETH_CL_CLIENTS: Mapping[ClientName, Sequence[str]] = {
    ClientName.PRYSM: ("prysm",),
    ClientName.LIGHTHOUSE: ("lighthouse",),
    ClientName.TEKU: ("teku",),
    ClientName.NIMBUS: ("nimbus", "nim-libp2p"),
    ClientName.LODESTAR: ("lodestar", "js-libp2p"),
    ClientName.GRANDINE: ("grandine", "rust-libp2p"),
    ClientName.CORTEX: ("cortex",),
    ClientName.TRINITY: ("trinity",),
    ClientName.ERIGON: ("erigon", "erigon/lightclient"),
}

IPFS_CLIENTS: Mapping[ClientName, Sequence[str]] = {
    ClientName.KUBO: ("kubo",),
    ClientName.GO_IPFS: ("go-ipfs",),
    ClientName.HYDRA_BOOSTER: ("hydra-booster",),
    ClientName.STORM: ("storm",),
    ClientName.IOI: ("ioi",),
    ClientName.PUNCHR: ("punchr",),
}

FILECOIN_CLIENTS: Mapping[ClientName, Sequence[str]] = {
    ClientName.LOTUS: ("lotus",),
}

VALID_OS: Mapping[ClientOS, Sequence[str]] = {
    ClientOS.MAC: ("macos", "freebsd"),
    ClientOS.WINDOWS: ("win", "windows"),
    ClientOS.LINUX: ("linux", "ubuntu"),
}

VALID_ARCHS: Mapping[ClientArch, Sequence[str]] = {
    ClientArch.ARM: ("aarch64", "aarch", "aarch_64"),
    ClientArch.X86_64: ("x86_64",),
}

# Index of the "/"-separated field that carries the version, per client.
_ETH_VERSION_FIELD = {
    ClientName.PRYSM: 1,
    ClientName.LIGHTHOUSE: 1,
    ClientName.LODESTAR: 1,
    ClientName.GRANDINE: 1,
    ClientName.NIMBUS: 1,
    ClientName.CORTEX: 1,
    ClientName.TRINITY: 1,
    ClientName.ERIGON: 1,
    ClientName.TEKU: 2,
}
_IPFS_VERSION_FIELD = {
    ClientName.GO_IPFS: 1,
    ClientName.KUBO: 1,
    ClientName.IOI: 1,
    ClientName.STORM: 1,
    ClientName.HYDRA_BOOSTER: 1,
}


@dataclass(frozen=True)
class ClientInfo:
    """What could be told about a peer's client from its user agent."""

    name: str
    version: str
    os: str
    arch: str


E = TypeVar("E", ClientName, ClientOS, ClientArch)


def _match(valid_names: Mapping[E, Sequence[str]], parsing_name: str, default: E) -> E:
    lowered = parsing_name.lower()
    for key, aliases in valid_names.items():
        if any(alias.lower() in lowered for alias in aliases):
            return key
    return default


def client_name_parser(valid_names: Mapping[ClientName, Sequence[str]], parsing_name: str) -> ClientName:
    """Return the first client whose alias appears in the name, case-insensitively."""
    return _match(valid_names, parsing_name, ClientName.UNKNOWN)


def client_os_parser(valid_names: Mapping[ClientOS, Sequence[str]], parsing_name: str) -> ClientOS:
    """Return the first OS whose alias appears in the string, case-insensitively."""
    return _match(valid_names, parsing_name, ClientOS.UNKNOWN)


def client_arch_parser(valid_names: Mapping[ClientArch, Sequence[str]], parsing_name: str) -> ClientArch:
    """Return the first architecture whose alias appears in the string."""
    return _match(valid_names, parsing_name, ClientArch.UNKNOWN)


def _clean_version(version: str) -> str:
    return version.split("+")[0].split("-")[0]


def _clean_version_lotus(version: str) -> str:
    parts = version.split("+")[0].split("-")
    if len(parts) < 2:
        raise ValueError(f"no version in lotus user agent {version!r}")
    return parts[1]


def _field_version(fields: Sequence[str], index: Optional[int], user_agent: str) -> str:
    if index is None:
        logger.error("unable to determine client name for UserAgent %s", user_agent)
        return UNKNOWN
    raw = fields[index] if index < len(fields) else UNKNOWN
    return _clean_version(raw)


def parse_client_type(network: Union[NetworkType, str], user_agent: str) -> ClientInfo:
    """Split a user agent into client name, version, OS and architecture."""
    fields = user_agent.split("/")
    name = ""
    version = ""
    try:
        net: Optional[NetworkType] = NetworkType(network)
    except ValueError:
        logger.error("unable to retrieve the user_agent from network %s", network)
        net = None

    if net is NetworkType.ETHEREUM:
        client = client_name_parser(ETH_CL_CLIENTS, fields[0])
        version = _field_version(fields, _ETH_VERSION_FIELD.get(client), user_agent)
        name = client.value
    elif net is NetworkType.IPFS:
        client = client_name_parser(IPFS_CLIENTS, fields[0])
        version = _field_version(fields, _IPFS_VERSION_FIELD.get(client), user_agent)
        name = client.value
    elif net is NetworkType.FILECOIN:
        client = client_name_parser(FILECOIN_CLIENTS, fields[0])
        if client is ClientName.LOTUS:
            version = _clean_version(_clean_version_lotus(fields[0]))
        else:
            logger.error("unable to determine client name for UserAgent %s", user_agent)
            version = UNKNOWN
        name = client.value

    return ClientInfo(
        name=name,
        version=version,
        os=client_os_parser(VALID_OS, user_agent).value,
        arch=client_arch_parser(VALID_ARCHS, user_agent).value,
    )