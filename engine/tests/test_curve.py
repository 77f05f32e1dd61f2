"""Tests for secp256k1 scalar and point helpers."""

from __future__ import annotations

import pytest
from ecdsa.ellipticcurve import INFINITY

from tecdsa_engine.utils.curve import (
    G,
    ORDER,
    base_mul,
    digest_to_scalar,
    is_identity,
    point_add,
    point_from_bytes,
    point_from_hex,
    point_mul,
    point_neg,
    point_sub,
    point_to_bytes,
    point_to_hex,
    point_x,
    points_equal,
    random_scalar,
    scalar_from_bytes,
    scalar_from_hex,
    scalar_inv,
    scalar_to_bytes,
    scalar_to_hex,
    with_precompute,
)


class TestScalars:
    def test_random_scalar_in_range(self) -> None:
        for _ in range(20):
            k = random_scalar()
            assert 0 < k < ORDER

    def test_inverse(self) -> None:
        k = random_scalar()
        assert k * scalar_inv(k) % ORDER == 1

    def test_inverse_of_zero_raises(self) -> None:
        with pytest.raises(ValueError):
            scalar_inv(ORDER)

    def test_encoding_is_32_bytes(self) -> None:
        assert len(scalar_to_bytes(1)) == 32
        assert scalar_to_hex(1) == "00" * 31 + "01"

    def test_unreduced_scalar_rejected(self) -> None:
        with pytest.raises(ValueError, match="not reduced"):
            scalar_from_bytes(ORDER.to_bytes(32, "big"))

    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(ValueError):
            scalar_from_bytes(b"\x01" * 31)

    def test_hex_accepts_prefix(self) -> None:
        assert scalar_from_hex("0x" + scalar_to_hex(42)) == 42

    def test_hex_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            scalar_from_hex("zz")
        with pytest.raises(ValueError):
            scalar_from_hex(None)  # type: ignore[arg-type]

    def test_digest_to_scalar_reduces(self) -> None:
        assert digest_to_scalar(b"\xff" * 32) == (2**256 - 1) % ORDER

    def test_empty_digest_rejected(self) -> None:
        with pytest.raises(ValueError):
            digest_to_scalar(b"")


class TestPoints:
    def test_base_mul_zero_is_identity(self) -> None:
        assert is_identity(base_mul(0))
        assert is_identity(base_mul(ORDER))

    def test_addition_matches_scalar_sum(self) -> None:
        a, b = random_scalar(), random_scalar()
        assert points_equal(point_add(base_mul(a), base_mul(b)), base_mul(a + b))

    def test_identity_is_neutral(self) -> None:
        p = base_mul(7)
        assert points_equal(point_add(p, INFINITY), p)
        assert points_equal(point_add(INFINITY, p), p)

    def test_sub_and_neg(self) -> None:
        p = base_mul(9)
        assert is_identity(point_sub(p, p))
        assert is_identity(point_add(p, point_neg(p)))

    def test_point_mul(self) -> None:
        assert points_equal(point_mul(base_mul(3), 5), base_mul(15))
        assert is_identity(point_mul(INFINITY, 5))

    def test_point_x_of_identity_raises(self) -> None:
        with pytest.raises(ValueError):
            point_x(INFINITY)

    def test_precompute_keeps_point(self) -> None:
        p = base_mul(11)
        assert points_equal(with_precompute(p), p)
        assert points_equal(point_mul(with_precompute(p), 3), base_mul(33))


class TestPointEncoding:
    def test_compressed_length(self) -> None:
        assert len(point_to_bytes(G)) == 33

    def test_decode_both_parities(self) -> None:
        for k in (1, 2, 3, 4, 5, 6):
            p = base_mul(k)
            assert points_equal(point_from_bytes(point_to_bytes(p)), p)

    def test_identity_encoding(self) -> None:
        assert point_to_bytes(INFINITY) == b"\x00"
        assert is_identity(point_from_bytes(b"\x00"))

    def test_rejects_bad_prefix(self) -> None:
        raw = bytearray(point_to_bytes(G))
        raw[0] = 4
        with pytest.raises(ValueError):
            point_from_bytes(bytes(raw))

    def test_rejects_off_curve_x(self) -> None:
        rejected = 0
        for x in range(1, 40):
            try:
                point_from_bytes(b"\x02" + x.to_bytes(32, "big"))
            except ValueError as e:
                assert "not on secp256k1" in str(e)
                rejected += 1
        # about half of all x coordinates have no point above them
        assert rejected > 0

    def test_rejects_x_beyond_field(self) -> None:
        with pytest.raises(ValueError, match="out of range"):
            point_from_bytes(b"\x02" + b"\xff" * 32)

    def test_rejects_truncated(self) -> None:
        with pytest.raises(ValueError):
            point_from_hex(point_to_hex(G)[:-2])

    def test_hex_rejects_non_string(self) -> None:
        with pytest.raises(ValueError):
            point_from_hex(123)  # type: ignore[arg-type]
