"""Non-interactive Schnorr (dlog) and Chaum-Pedersen (dlogeq) proofs.

Both are made non-interactive with a ``Transcript`` challenge. Callers pass a
transcript already forked per prover, so a proof cannot be replayed under the
other participant's identity.
"""

from __future__ import annotations

from dataclasses import dataclass

from tecdsa_engine.utils.crypto import Transcript
from tecdsa_engine.utils.curve import (
    G,
    ORDER,
    ECPoint,
    base_mul,
    point_mul,
    point_sub,
    point_to_bytes,
    random_scalar,
    scalar_from_hex,
    scalar_to_hex,
)


@dataclass(frozen=True)
class DlogProof:
    """Proof of knowledge of x such that X = x·G."""

    e: int
    s: int

    def to_wire(self) -> dict[str, str]:
        return {"e": scalar_to_hex(self.e), "s": scalar_to_hex(self.s)}

    @classmethod
    def from_wire(cls, data: dict) -> DlogProof:
        if not isinstance(data, dict):
            raise ValueError("Proof must be an object")
        return cls(e=scalar_from_hex(data["e"]), s=scalar_from_hex(data["s"]))


@dataclass(frozen=True)
class DlogEqProof:
    """Proof that X0 = x·G and X1 = x·H share the same x."""

    e: int
    s: int

    def to_wire(self) -> dict[str, str]:
        return {"e": scalar_to_hex(self.e), "s": scalar_to_hex(self.s)}

    @classmethod
    def from_wire(cls, data: dict) -> DlogEqProof:
        if not isinstance(data, dict):
            raise ValueError("Proof must be an object")
        return cls(e=scalar_from_hex(data["e"]), s=scalar_from_hex(data["s"]))


def prove_dlog(transcript: Transcript, x: int, big_x: ECPoint) -> DlogProof:
    k = random_scalar()
    big_k = base_mul(k)
    e = transcript.challenge(b"dlog", point_to_bytes(big_x), point_to_bytes(big_k))
    return DlogProof(e=e, s=(k + e * x) % ORDER)


def verify_dlog(transcript: Transcript, big_x: ECPoint, proof: DlogProof) -> bool:
    big_k = point_sub(base_mul(proof.s), point_mul(big_x, proof.e))
    e = transcript.challenge(b"dlog", point_to_bytes(big_x), point_to_bytes(big_k))
    return e == proof.e


def prove_dlogeq(
    transcript: Transcript,
    x: int,
    big_h: ECPoint,
    big_x0: ECPoint,
    big_x1: ECPoint,
) -> DlogEqProof:
    k = random_scalar()
    big_k0 = base_mul(k)
    big_k1 = point_mul(big_h, k)
    e = _dlogeq_challenge(transcript, big_h, big_x0, big_x1, big_k0, big_k1)
    return DlogEqProof(e=e, s=(k + e * x) % ORDER)


def verify_dlogeq(
    transcript: Transcript,
    big_h: ECPoint,
    big_x0: ECPoint,
    big_x1: ECPoint,
    proof: DlogEqProof,
) -> bool:
    big_k0 = point_sub(base_mul(proof.s), point_mul(big_x0, proof.e))
    big_k1 = point_sub(point_mul(big_h, proof.s), point_mul(big_x1, proof.e))
    e = _dlogeq_challenge(transcript, big_h, big_x0, big_x1, big_k0, big_k1)
    return e == proof.e


def _dlogeq_challenge(transcript: Transcript, *points: ECPoint) -> int:
    return transcript.challenge(b"dlogeq", point_to_bytes(G), *(point_to_bytes(p) for p in points))
