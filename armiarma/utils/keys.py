"""secp256k1 key generation and conversion between ECDSA and libp2p-style keys."""

from __future__ import annotations

import binascii
from typing import Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# secp256k1 field prime and group order.
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_KEY_SIZE = 32

_CURVE = ec.SECP256K1()


def _is_on_curve(x: int, y: int) -> bool:
    if not (0 <= x < _P and 0 <= y < _P):
        return False
    return (y * y - x * x * x - 7) % _P == 0


def _to_ecdsa(data: bytes) -> ec.EllipticCurvePrivateKey:
    """Build an ECDSA key from a 32-byte big-endian scalar, strictly validated."""
    if len(data) != _KEY_SIZE:
        raise ValueError("invalid length, need 256 bits")
    scalar = int.from_bytes(data, "big")
    if scalar >= _N:
        raise ValueError("invalid private key, >=N")
    if scalar == 0:
        raise ValueError("invalid private key, zero or negative")
    return ec.derive_private_key(scalar, _CURVE)


def _from_ecdsa(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_numbers().private_value.to_bytes(_KEY_SIZE, "big")


def _from_ecdsa_pub(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def _unmarshal_uncompressed(data: bytes) -> Tuple[int, int]:
    if len(data) != 1 + 2 * _KEY_SIZE or data[0] != 0x04:
        raise ValueError("invalid secp256k1 public key")
    x = int.from_bytes(data[1 : 1 + _KEY_SIZE], "big")
    y = int.from_bytes(data[1 + _KEY_SIZE :], "big")
    return x, y


class Secp256k1PublicKey:
    """A secp256k1 public key whose raw form is the 33-byte compressed point."""

    __slots__ = ("_key",)

    def __init__(self, key: ec.EllipticCurvePublicKey) -> None:
        if not isinstance(key.curve, ec.SECP256K1):
            raise ValueError("key is not on the secp256k1 curve")
        self._key = key

    @classmethod
    def from_bytes(cls, data: bytes) -> "Secp256k1PublicKey":
        """Parse a compressed or uncompressed SEC1 point."""
        return cls(ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(data)))

    @property
    def ecdsa(self) -> ec.EllipticCurvePublicKey:
        return self._key

    def raw(self) -> bytes:
        return self._key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secp256k1PublicKey):
            return NotImplemented
        return self.raw() == other.raw()

    def __hash__(self) -> int:
        return hash(self.raw())


class Secp256k1PrivateKey:
    """A secp256k1 private key whose raw form is the 32-byte scalar."""

    __slots__ = ("_key",)

    def __init__(self, key: ec.EllipticCurvePrivateKey) -> None:
        if not isinstance(key.curve, ec.SECP256K1):
            raise ValueError("key is not on the secp256k1 curve")
        self._key = key

    @classmethod
    def from_bytes(cls, data: bytes) -> "Secp256k1PrivateKey":
        """Parse a 32-byte scalar, reduced modulo the curve order."""
        if len(data) != _KEY_SIZE:
            raise ValueError(f"expected secp256k1 data size to be {_KEY_SIZE}")
        scalar = int.from_bytes(data, "big") % _N
        if scalar == 0:
            raise ValueError("invalid private key, zero")
        return cls(ec.derive_private_key(scalar, _CURVE))

    @property
    def ecdsa(self) -> ec.EllipticCurvePrivateKey:
        return self._key

    def raw(self) -> bytes:
        return _from_ecdsa(self._key)

    def public_key(self) -> Secp256k1PublicKey:
        return Secp256k1PublicKey(self._key.public_key())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secp256k1PrivateKey):
            return NotImplemented
        return self.raw() == other.raw()

    def __hash__(self) -> int:
        return hash(self.raw())


def generate_ecdsa_priv_key() -> ec.EllipticCurvePrivateKey:
    """Generate a fresh private key valid for the Ethereum consensus layer."""
    return ec.generate_private_key(_CURVE)


def parse_ecdsa_private_key(hex_key: str) -> ec.EllipticCurvePrivateKey:
    """Parse a hex-encoded 32-byte private key; raises ValueError if invalid."""
    try:
        data = binascii.unhexlify(hex_key)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid hex private key: {exc}") from exc
    return _to_ecdsa(data)


def adapt_secp256k1_from_ecdsa(ecdsa_key: ec.EllipticCurvePrivateKey) -> Secp256k1PrivateKey:
    """Wrap an ECDSA private key as a libp2p-style secp256k1 key."""
    return Secp256k1PrivateKey.from_bytes(_from_ecdsa(ecdsa_key))


def secp256k1_to_string(key: Secp256k1PrivateKey) -> str:
    """Return the hex encoding of the key's raw bytes."""
    return key.raw().hex()


def adapt_ecdsa_from_secp256k1(priv_key: Secp256k1PrivateKey) -> ec.EllipticCurvePrivateKey:
    """Turn a libp2p-style secp256k1 key back into an ECDSA private key."""
    return _to_ecdsa(priv_key.raw())


def convert_ecdsa_pubkey_to_secp256k1(pubkey: ec.EllipticCurvePublicKey) -> Secp256k1PublicKey:
    """Wrap an ECDSA public key as a libp2p-style secp256k1 public key."""
    try:
        return Secp256k1PublicKey.from_bytes(_from_ecdsa_pub(pubkey))
    except ValueError as exc:
        raise ValueError(f"unable to unmarshal libp2p key from geth pubkey bytes: {exc}") from exc


def is_libp2p_valid_ethereum_private_key(privkey: object) -> bool:
    """Tell whether a libp2p-style key is a usable Ethereum secp256k1 key."""
    if not isinstance(privkey, Secp256k1PrivateKey):
        return False
    try:
        key = _to_ecdsa(privkey.raw())
    except ValueError:
        return False
    numbers = key.public_key().public_numbers()
    return _is_on_curve(numbers.x, numbers.y)


def is_libp2p_valid_ethereum_public_key(pubkey: object) -> bool:
    """Tell whether a libp2p-style public key is valid for Ethereum.

    The raw form is compressed, which the uncompressed decoder rejects; such a
    key is taken as valid.
    """
    if not isinstance(pubkey, Secp256k1PublicKey):
        return False
    point: Optional[Tuple[int, int]]
    try:
        point = _unmarshal_uncompressed(pubkey.raw())
    except ValueError:
        return True
    return _is_on_curve(*point)


def is_geth_valid_ethereum_private_key(privkey: ec.EllipticCurvePrivateKey) -> bool:
    """Tell whether the private key's public point lies on secp256k1."""
    if not isinstance(privkey.curve, ec.SECP256K1):
        return False
    numbers = privkey.public_key().public_numbers()
    return _is_on_curve(numbers.x, numbers.y)


def is_geth_valid_ethereum_public_key(pubkey: ec.EllipticCurvePublicKey) -> bool:
    """Tell whether the public point lies on secp256k1."""
    if not isinstance(pubkey.curve, ec.SECP256K1):
        return False
    numbers = pubkey.public_numbers()
    return _is_on_curve(numbers.x, numbers.y)