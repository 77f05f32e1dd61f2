"""Oblivious transfer building blocks for the triple multiplication.

Per triple, the server (extension sender) and client (extension receiver)
run:

  1. Batch random OT, 128 base instances on secp256k1 (Chou-Orlandi style).
     Roles are reversed here: the client is the base sender with keys
     (k0_j, k1_j); the server is the base receiver choosing the bits of its
     secret delta.
  2. Correlated OT extension: both sides stretch the base keys into column
     bit matrices. The client sends u_j = t0_j ^ t1_j ^ b, the server forms
     q_j = t_delta_j ^ (d_j * u_j), so that row q_i = row t_i ^ b_i * delta.
  3. Random OT extension with a consistency check: the server picks a seed,
     both derive chi, the client proves its rows are consistent via
     carry-less products in GF(2)[x]. A failed check is an OT desync.
  4. Hashing the first ``OT_BATCH`` rows yields random OT pairs
     (v0_i, v1_i) for the server and (b_i, v_bi) for the client.

MtA then turns the random OTs into additive shares of a product of one
server scalar and one client scalar.

Bit matrices are held column-wise as Python ints; bit i of column j is row i.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field

from tecdsa_engine.core.errors import OTDesync
from tecdsa_engine.utils.crypto import hash_to_scalar
from tecdsa_engine.utils.curve import (
    ORDER,
    ECPoint,
    base_mul,
    point_add,
    point_mul,
    point_sub,
    point_to_bytes,
    random_scalar,
    with_precompute,
)

SECURITY_PARAMETER = 128
SCALAR_BITS = 256
MTA_BATCH = SCALAR_BITS + SECURITY_PARAMETER
OT_BATCH = 2 * MTA_BATCH
SEED_BYTES = 32

_KEY_BYTES = SECURITY_PARAMETER // 8
_CHUNK_MASK = (1 << SECURITY_PARAMETER) - 1


def adjust_size(size: int) -> int:
    """Rows to extend for ``size`` outputs: round up to the block, plus two blocks for the check."""
    blocks = -(-size // SECURITY_PARAMETER)
    return blocks * SECURITY_PARAMETER + 2 * SECURITY_PARAMETER


EXTENDED_ROWS = adjust_size(OT_BATCH)


# ---------------------------------------------------------------------------
# Bit helpers
# ---------------------------------------------------------------------------


def gf_mul(a: int, b: int) -> int:
    """Carry-less product of two 128-bit vectors (256-bit result)."""
    out = 0
    while b:
        if b & 1:
            out ^= a
        a <<= 1
        b >>= 1
    return out


def chunks(value: int, count: int) -> list[int]:
    return [(value >> (SECURITY_PARAMETER * i)) & _CHUNK_MASK for i in range(count)]


def expand_columns(sid: bytes, keys: list[bytes], rows: int) -> list[int]:
    """Stretch each 128-bit base key into a ``rows``-bit column."""
    nbytes = rows // 8
    return [
        int.from_bytes(
            hashlib.shake_256(b"tecdsa/ot-expand" + sid + j.to_bytes(4, "big") + key).digest(nbytes),
            "little",
        )
        for j, key in enumerate(keys)
    ]


def transpose(columns: list[int], rows: int) -> list[int]:
    """Column-major bit matrix to a list of ``rows`` row vectors."""
    out = [0] * rows
    mask = (1 << rows) - 1
    for j, col in enumerate(columns):
        bit = 1 << j
        col &= mask
        i = 0
        while col:
            if col & 1:
                out[i] |= bit
            col >>= 1
            i += 1
    return out


def derive_chi(seed: bytes, count: int) -> list[int]:
    stream = hashlib.shake_256(b"tecdsa/rot-chi" + seed).digest(_KEY_BYTES * count)
    return [int.from_bytes(stream[i * _KEY_BYTES : (i + 1) * _KEY_BYTES], "big") for i in range(count)]


def _base_key(sid: bytes, j: int, big_x: ECPoint, big_y: ECPoint, big_p: ECPoint) -> bytes:
    h = hashlib.sha256(b"tecdsa/batch-random-ot" + sid + j.to_bytes(4, "big"))
    h.update(point_to_bytes(big_x))
    h.update(point_to_bytes(big_y))
    h.update(point_to_bytes(big_p))
    return h.digest()[:_KEY_BYTES]


def _row_scalar(sid: bytes, i: int, row: int) -> int:
    return hash_to_scalar(b"tecdsa/rot-row", sid, i.to_bytes(4, "big"), row.to_bytes(_KEY_BYTES, "big"))


# ---------------------------------------------------------------------------
# OT extension, receiver side (client)
# ---------------------------------------------------------------------------


@dataclass
class ExtensionReceiver:
    """Client half of one triple's OT extension."""

    sid: bytes
    y: int = field(default_factory=random_scalar, repr=False)
    choices: int = field(default=0, repr=False)
    t_columns: list[int] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.big_y = base_mul(self.y)
        self._big_z = point_mul(self.big_y, self.y)

    def correlate(self, big_x: list[ECPoint]) -> list[int]:
        """Derive base keys from the server's X points and return the u columns."""
        if len(big_x) != SECURITY_PARAMETER:
            raise OTDesync(f"Expected {SECURITY_PARAMETER} base OT points, got {len(big_x)}")
        k0: list[bytes] = []
        k1: list[bytes] = []
        for j, x_j in enumerate(big_x):
            y_x = point_mul(x_j, self.y)
            k0.append(_base_key(self.sid, j, x_j, self.big_y, y_x))
            k1.append(_base_key(self.sid, j, x_j, self.big_y, point_sub(y_x, self._big_z)))
        self.choices = secrets.randbits(EXTENDED_ROWS)
        self.t_columns = expand_columns(self.sid, k0, EXTENDED_ROWS)
        t1 = expand_columns(self.sid, k1, EXTENDED_ROWS)
        return [t0 ^ t1_j ^ self.choices for t0, t1_j in zip(self.t_columns, t1)]

    def check_values(self, seed: bytes) -> tuple[int, list[int]]:
        mu = EXTENDED_ROWS // SECURITY_PARAMETER
        chi = derive_chi(seed, mu)
        small_x = 0
        for b_chunk, c in zip(chunks(self.choices, mu), chi):
            small_x ^= gf_mul(b_chunk, c)
        small_t = []
        for col in self.t_columns:
            acc = 0
            for t_chunk, c in zip(chunks(col, mu), chi):
                acc ^= gf_mul(t_chunk, c)
            small_t.append(acc)
        return small_x, small_t

    def outputs(self) -> list[tuple[int, int]]:
        """Random OT results (choice bit, chosen value) for the first ``OT_BATCH`` rows."""
        rows = transpose(self.t_columns, OT_BATCH)
        return [((self.choices >> i) & 1, _row_scalar(self.sid, i, row)) for i, row in enumerate(rows)]

    def erase(self) -> None:
        self.y = 0
        self.choices = 0
        self.t_columns = []


# ---------------------------------------------------------------------------
# OT extension, sender side (server)
# ---------------------------------------------------------------------------


@dataclass
class ExtensionSender:
    """Server half of one triple's OT extension; ``delta`` is the correlation."""

    sid: bytes
    delta: int = field(default_factory=lambda: secrets.randbits(SECURITY_PARAMETER), repr=False)
    keys: list[bytes] = field(default_factory=list, repr=False)
    q_columns: list[int] = field(default_factory=list, repr=False)
    seed: bytes = b""

    def respond(self, big_y: ECPoint) -> list[ECPoint]:
        """Base OT receiver: choose the bits of delta against the client's Y."""
        big_y = with_precompute(big_y)
        big_x: list[ECPoint] = []
        self.keys = []
        for j in range(SECURITY_PARAMETER):
            x_j = random_scalar()
            d_j = (self.delta >> j) & 1
            x_point = base_mul(x_j)
            if d_j:
                x_point = point_add(x_point, big_y)
            big_x.append(x_point)
            self.keys.append(_base_key(self.sid, j, x_point, big_y, point_mul(big_y, x_j)))
        return big_x

    def receive_correlation(self, u_columns: list[int]) -> bytes:
        """Absorb the client's u columns; returns the check seed to send back."""
        if len(u_columns) != SECURITY_PARAMETER or len(self.keys) != SECURITY_PARAMETER:
            raise OTDesync("Correlated OT column count mismatch")
        t = expand_columns(self.sid, self.keys, EXTENDED_ROWS)
        self.q_columns = [
            t_j ^ (u_j if (self.delta >> j) & 1 else 0) for j, (t_j, u_j) in enumerate(zip(t, u_columns))
        ]
        self.seed = secrets.token_bytes(SEED_BYTES)
        return self.seed

    def verify(self, small_x: int, small_t: list[int]) -> None:
        if len(small_t) != SECURITY_PARAMETER:
            raise OTDesync("Consistency check vector has the wrong length")
        mu = EXTENDED_ROWS // SECURITY_PARAMETER
        chi = derive_chi(self.seed, mu)
        for j, col in enumerate(self.q_columns):
            small_q = 0
            for q_chunk, c in zip(chunks(col, mu), chi):
                small_q ^= gf_mul(q_chunk, c)
            expected = small_t[j] ^ (small_x if (self.delta >> j) & 1 else 0)
            if small_q != expected:
                raise OTDesync("OT extension consistency check failed")

    def outputs(self) -> list[tuple[int, int]]:
        rows = transpose(self.q_columns, OT_BATCH)
        return [
            (_row_scalar(self.sid, i, row), _row_scalar(self.sid, i, row ^ self.delta)) for i, row in enumerate(rows)
        ]

    def erase(self) -> None:
        self.delta = 0
        self.keys = []
        self.q_columns = []


# ---------------------------------------------------------------------------
# Multiplicative-to-additive
# ---------------------------------------------------------------------------


def _mta_chi(seed: bytes, count: int) -> list[int]:
    return [hash_to_scalar(b"tecdsa/mta-chi", seed, i.to_bytes(4, "big")) for i in range(1, count)]


@dataclass
class MtASender:
    """Holds ``a``; ends with alpha such that alpha + beta = a * b."""

    pairs: list[tuple[int, int]] = field(repr=False)
    a: int = field(repr=False)
    deltas: list[int] = field(default_factory=list, repr=False)

    def first_message(self) -> list[tuple[int, int]]:
        self.deltas = [random_scalar() for _ in self.pairs]
        return [
            ((v0 + d + self.a) % ORDER, (v1 + d - self.a) % ORDER)
            for (v0, v1), d in zip(self.pairs, self.deltas)
        ]

    def finish(self, chi1: int, seed: bytes) -> int:
        if not self.deltas:
            raise OTDesync("MtA finished before its first message")
        chi = [chi1, *_mta_chi(seed, len(self.deltas))]
        alpha = sum(c * d for c, d in zip(chi, self.deltas)) % ORDER
        self.erase()
        return (-alpha) % ORDER

    def erase(self) -> None:
        self.pairs = []
        self.deltas = []
        self.a = 0


@dataclass
class MtAReceiver:
    """Holds ``b`` and the random OT choices; produces beta."""

    choices: list[tuple[int, int]] = field(repr=False)
    b: int = field(repr=False)

    def respond(self, c: list[tuple[int, int]]) -> tuple[int, int, bytes]:
        """Returns (beta, chi1, seed); chi1 and seed go to the sender."""
        if len(c) != len(self.choices):
            raise OTDesync(f"MtA expected {len(self.choices)} ciphertext pairs, got {len(c)}")
        m = [
            ((c1 if t else c0) - v) % ORDER
            for (c0, c1), (t, v) in zip(c, self.choices)
        ]
        seed = secrets.token_bytes(SEED_BYTES)
        chi = _mta_chi(seed, len(self.choices))
        chi1 = self.b
        for (t, _), c_i in zip(self.choices[1:], chi):
            chi1 = (chi1 + c_i) % ORDER if t else (chi1 - c_i) % ORDER
        if self.choices[0][0]:
            chi1 = (-chi1) % ORDER
        beta = (chi1 * m[0] + sum(c_i * m_i for c_i, m_i in zip(chi, m[1:]))) % ORDER
        self.erase()
        return beta, chi1, seed

    def erase(self) -> None:
        self.choices = []
        self.b = 0
