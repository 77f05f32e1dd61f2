"""Hashing, commitments, transcripts and polynomials over secp256k1.

Shamir evaluation points are ``participant + 1`` so that participant 0 never
evaluates a polynomial at zero.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from tecdsa_engine.utils.curve import (
    ORDER,
    ECPoint,
    base_mul,
    point_add,
    point_from_hex,
    point_mul,
    point_to_bytes,
    point_to_hex,
    random_scalar,
    scalar_inv,
)

RANDOMIZER_BYTES = 32
DIGEST_BYTES = 32


def _frame(*parts: bytes) -> bytes:
    out = bytearray()
    for part in parts:
        out += len(part).to_bytes(8, "big")
        out += part
    return bytes(out)


def hash_to_scalar(*parts: bytes) -> int:
    """Hash length-framed byte strings to a scalar.

    SHA-512 output is reduced modulo the order; the 256 surplus bits keep
    the bias negligible.
    """
    digest = hashlib.sha512(b"tecdsa/hash-to-scalar" + _frame(*parts)).digest()
    return int.from_bytes(digest, "big") % ORDER


def evaluation_point(participant: int) -> int:
    return participant + 1


def lagrange_coefficient(participant: int, participants: list[int]) -> int:
    """Lagrange basis coefficient at zero for ``participant`` among ``participants``."""
    if participant not in participants:
        raise ValueError(f"Participant {participant} not in {participants}")
    xi = evaluation_point(participant)
    num, den = 1, 1
    for other in participants:
        if other == participant:
            continue
        xj = evaluation_point(other)
        num = num * xj % ORDER
        den = den * (xj - xi) % ORDER
    return num * scalar_inv(den) % ORDER


# ---------------------------------------------------------------------------
# Commitments
# ---------------------------------------------------------------------------


def commit(*parts: bytes) -> tuple[bytes, bytes]:
    """Commit to framed ``parts``. Returns (commitment, randomizer)."""
    randomizer = secrets.token_bytes(RANDOMIZER_BYTES)
    return _commitment(randomizer, parts), randomizer


def check_commitment(commitment: bytes, randomizer: bytes, *parts: bytes) -> bool:
    if len(randomizer) != RANDOMIZER_BYTES:
        return False
    return hmac.compare_digest(commitment, _commitment(randomizer, parts))


def _commitment(randomizer: bytes, parts: tuple[bytes, ...]) -> bytes:
    return hashlib.sha256(b"tecdsa/commit" + randomizer + _frame(*parts)).digest()


def confirmation_digest(commitments: list[bytes]) -> bytes:
    """Digest of every participant's commitment, in participant order."""
    return hashlib.sha256(b"tecdsa/confirm" + _frame(*commitments)).digest()


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class Transcript:
    """Running SHA-256 transcript used for Fiat-Shamir challenges.

    ``fork`` derives an independent child so one proof's challenge can be
    bound to its prover without disturbing the shared transcript.
    """

    def __init__(self, label: bytes) -> None:
        self._state = hashlib.sha256(b"tecdsa/transcript" + _frame(label)).digest()

    def message(self, label: bytes, data: bytes) -> None:
        self._state = hashlib.sha256(self._state + _frame(label, data)).digest()

    def fork(self, label: bytes, data: bytes) -> Transcript:
        child = Transcript.__new__(Transcript)
        child._state = hashlib.sha256(self._state + b"fork" + _frame(label, data)).digest()
        return child

    def challenge(self, label: bytes, *parts: bytes) -> int:
        return hash_to_scalar(self._state, label, *parts)

    def digest(self) -> bytes:
        return self._state


# ---------------------------------------------------------------------------
# Polynomials
# ---------------------------------------------------------------------------


@dataclass
class Polynomial:
    """Scalar polynomial; ``coefficients[0]`` is the constant term."""

    coefficients: list[int]

    @classmethod
    def random(cls, degree: int, constant: int | None = None) -> Polynomial:
        if degree < 0:
            raise ValueError("Polynomial degree must be non-negative")
        coeffs = [random_scalar() for _ in range(degree + 1)]
        if constant is not None:
            coeffs[0] = constant % ORDER
        return cls(coeffs)

    @property
    def constant(self) -> int:
        return self.coefficients[0]

    def set_constant(self, value: int) -> None:
        self.coefficients[0] = value % ORDER

    def evaluate(self, x: int) -> int:
        acc = 0
        for c in reversed(self.coefficients):
            acc = (acc * x + c) % ORDER
        return acc

    def commit(self) -> GroupPolynomial:
        return GroupPolynomial([base_mul(c) for c in self.coefficients])

    def erase(self) -> None:
        for i in range(len(self.coefficients)):
            self.coefficients[i] = 0


@dataclass
class GroupPolynomial:
    """Polynomial with point coefficients, the public image of a ``Polynomial``."""

    points: list[ECPoint]

    def __len__(self) -> int:
        return len(self.points)

    def __add__(self, other: GroupPolynomial) -> GroupPolynomial:
        if len(self) != len(other):
            raise ValueError("Cannot add group polynomials of different degree")
        return GroupPolynomial([point_add(p, q) for p, q in zip(self.points, other.points)])

    @property
    def constant(self) -> ECPoint:
        return self.points[0]

    def with_constant(self, point: ECPoint) -> GroupPolynomial:
        return GroupPolynomial([point, *self.points[1:]])

    def evaluate(self, x: int) -> ECPoint:
        acc = self.points[-1]
        for p in reversed(self.points[:-1]):
            acc = point_add(point_mul(acc, x), p)
        return acc

    def to_bytes(self) -> bytes:
        return _frame(*(point_to_bytes(p) for p in self.points))

    def to_wire(self) -> list[str]:
        return [point_to_hex(p) for p in self.points]

    @classmethod
    def from_wire(cls, values: list[str]) -> GroupPolynomial:
        if not isinstance(values, list) or not values:
            raise ValueError("Group polynomial must be a non-empty list")
        return cls([point_from_hex(v) for v in values])


def combine_shares(shares: dict[int, int]) -> int:
    """Reconstruct the shared value from Shamir shares keyed by participant.

    Dev/test helper: production code never holds both shares.
    """
    participants = sorted(shares)
    total = 0
    for p, y in shares.items():
        total = (total + lagrange_coefficient(p, participants) * y) % ORDER
    return total
