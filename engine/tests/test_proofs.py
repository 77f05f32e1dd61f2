"""Tests for Schnorr and Chaum-Pedersen proofs."""

from __future__ import annotations

import pytest

from tecdsa_engine.utils.crypto import Transcript
from tecdsa_engine.utils.curve import ORDER, base_mul, point_mul, random_scalar
from tecdsa_engine.utils.proofs import (
    DlogEqProof,
    DlogProof,
    prove_dlog,
    prove_dlogeq,
    verify_dlog,
    verify_dlogeq,
)


def _transcript(label: bytes = b"proof-test") -> Transcript:
    return Transcript(label)


class TestDlog:
    def test_valid_proof(self) -> None:
        x = random_scalar()
        proof = prove_dlog(_transcript(), x, base_mul(x))
        assert verify_dlog(_transcript(), base_mul(x), proof)

    def test_wrong_statement(self) -> None:
        x = random_scalar()
        proof = prove_dlog(_transcript(), x, base_mul(x))
        assert not verify_dlog(_transcript(), base_mul(x + 1), proof)

    def test_other_transcript(self) -> None:
        x = random_scalar()
        proof = prove_dlog(_transcript(b"a"), x, base_mul(x))
        assert not verify_dlog(_transcript(b"b"), base_mul(x), proof)

    def test_tampered_response(self) -> None:
        x = random_scalar()
        proof = prove_dlog(_transcript(), x, base_mul(x))
        forged = DlogProof(e=proof.e, s=(proof.s + 1) % ORDER)
        assert not verify_dlog(_transcript(), base_mul(x), forged)

    def test_wire_format(self) -> None:
        proof = prove_dlog(_transcript(), 5, base_mul(5))
        assert DlogProof.from_wire(proof.to_wire()) == proof

    def test_from_wire_rejects_non_object(self) -> None:
        with pytest.raises(ValueError):
            DlogProof.from_wire(["e", "s"])  # type: ignore[arg-type]


class TestDlogEq:
    def test_valid_proof(self) -> None:
        x = random_scalar()
        big_h = base_mul(random_scalar())
        proof = prove_dlogeq(_transcript(), x, big_h, base_mul(x), point_mul(big_h, x))
        assert verify_dlogeq(_transcript(), big_h, base_mul(x), point_mul(big_h, x), proof)

    def test_unequal_logs(self) -> None:
        x = random_scalar()
        big_h = base_mul(random_scalar())
        proof = prove_dlogeq(_transcript(), x, big_h, base_mul(x), point_mul(big_h, x + 1))
        assert not verify_dlogeq(_transcript(), big_h, base_mul(x), point_mul(big_h, x + 1), proof)

    def test_wire_format(self) -> None:
        big_h = base_mul(3)
        proof = prove_dlogeq(_transcript(), 2, big_h, base_mul(2), point_mul(big_h, 2))
        assert DlogEqProof.from_wire(proof.to_wire()) == proof
