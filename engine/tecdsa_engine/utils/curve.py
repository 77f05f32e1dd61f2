"""secp256k1 scalar and point helpers on top of python-ecdsa.

Scalars are plain ints reduced modulo the group order. Points are
``PointJacobi`` instances, with ``INFINITY`` standing in for the identity.
Wire encoding is SEC1 compressed (33 bytes); the identity encodes as a
single zero byte.
"""

from __future__ import annotations

import secrets

from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, Point, PointJacobi
from ecdsa.errors import MalformedPointError

CURVE = SECP256k1.curve
G: PointJacobi = SECP256k1.generator
ORDER: int = SECP256k1.order
FIELD_PRIME: int = CURVE.p()
HALF_ORDER = ORDER >> 1

SCALAR_BYTES = 32
POINT_BYTES = 33

ECPoint = PointJacobi | Point


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def random_scalar() -> int:
    """Uniform non-zero scalar."""
    return secrets.randbelow(ORDER - 1) + 1


def scalar_inv(a: int) -> int:
    a %= ORDER
    if a == 0:
        raise ValueError("Zero has no inverse modulo the group order")
    return pow(a, -1, ORDER)


def scalar_to_bytes(a: int) -> bytes:
    return (a % ORDER).to_bytes(SCALAR_BYTES, "big")


def scalar_from_bytes(data: bytes) -> int:
    """Parse a canonical 32-byte scalar. Values >= ORDER are rejected."""
    if len(data) != SCALAR_BYTES:
        raise ValueError(f"Scalar must be {SCALAR_BYTES} bytes, got {len(data)}")
    value = int.from_bytes(data, "big")
    if value >= ORDER:
        raise ValueError("Scalar is not reduced modulo the group order")
    return value


def scalar_to_hex(a: int) -> str:
    return scalar_to_bytes(a).hex()


def scalar_from_hex(value: str) -> int:
    try:
        raw = bytes.fromhex(value.removeprefix("0x"))
    except (ValueError, AttributeError):
        raise ValueError("Scalar must be a hex string")
    return scalar_from_bytes(raw)


def digest_to_scalar(digest: bytes) -> int:
    """Interpret a message digest as a scalar (leftmost 256 bits, reduced)."""
    if not digest:
        raise ValueError("Empty digest")
    return int.from_bytes(digest[:SCALAR_BYTES], "big") % ORDER


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


def is_identity(p: ECPoint) -> bool:
    return p is INFINITY or p == INFINITY


def base_mul(k: int) -> ECPoint:
    k %= ORDER
    if k == 0:
        return INFINITY
    return G * k


def point_mul(p: ECPoint, k: int) -> ECPoint:
    k %= ORDER
    if k == 0 or is_identity(p):
        return INFINITY
    return p * k


def point_add(p: ECPoint, q: ECPoint) -> ECPoint:
    if is_identity(p):
        return q
    if is_identity(q):
        return p
    return p + q


def point_neg(p: ECPoint) -> ECPoint:
    if is_identity(p):
        return INFINITY
    return -p


def point_sub(p: ECPoint, q: ECPoint) -> ECPoint:
    return point_add(p, point_neg(q))


def points_equal(p: ECPoint, q: ECPoint) -> bool:
    if is_identity(p) or is_identity(q):
        return is_identity(p) and is_identity(q)
    return p == q


def point_x(p: ECPoint) -> int:
    """Affine x coordinate reduced modulo the group order (ECDSA ``r``)."""
    if is_identity(p):
        raise ValueError("Identity has no x coordinate")
    return p.to_affine().x() % ORDER


def with_precompute(p: ECPoint) -> ECPoint:
    """Copy of ``p`` that caches multiples for repeated scalar multiplication."""
    if is_identity(p):
        return INFINITY
    affine = p.to_affine()
    return PointJacobi(CURVE, affine.x(), affine.y(), 1, ORDER, generator=True)


def point_to_bytes(p: ECPoint) -> bytes:
    if is_identity(p):
        return b"\x00"
    return p.to_bytes("compressed")


def point_from_bytes(data: bytes) -> ECPoint:
    """Decode a SEC1 compressed point, validating that it lies on the curve."""
    if data == b"\x00":
        return INFINITY
    if len(data) != POINT_BYTES or data[0] not in (2, 3):
        raise ValueError("Point must be 33-byte SEC1 compressed encoding")
    if int.from_bytes(data[1:], "big") >= FIELD_PRIME:
        raise ValueError("Point x coordinate out of range")
    try:
        return PointJacobi.from_bytes(CURVE, data, valid_encodings=("compressed",), order=ORDER)
    except MalformedPointError as e:
        raise ValueError("Point is not on secp256k1") from e


def point_to_hex(p: ECPoint) -> str:
    return point_to_bytes(p).hex()


def point_from_hex(value: str) -> ECPoint:
    try:
        raw = bytes.fromhex(value.removeprefix("0x"))
    except (ValueError, AttributeError):
        raise ValueError("Point must be a hex string")
    return point_from_bytes(raw)
