"""Tests for OT extension and multiplicative-to-additive conversion."""

from __future__ import annotations

import pytest

from tecdsa_engine.core.errors import OTDesync
from tecdsa_engine.core.ot import (
    EXTENDED_ROWS,
    MTA_BATCH,
    OT_BATCH,
    SECURITY_PARAMETER,
    ExtensionReceiver,
    ExtensionSender,
    MtAReceiver,
    MtASender,
    adjust_size,
    gf_mul,
    transpose,
)
from tecdsa_engine.utils.curve import ORDER, random_scalar

SID = b"ot-test-session"


@pytest.fixture(scope="module")
def extension() -> tuple[ExtensionSender, ExtensionReceiver]:
    """One completed, verified OT extension."""
    sender, receiver = ExtensionSender(SID), ExtensionReceiver(SID)
    big_x = sender.respond(receiver.big_y)
    u = receiver.correlate(big_x)
    seed = sender.receive_correlation(u)
    sender.verify(*receiver.check_values(seed))
    return sender, receiver


class TestBitHelpers:
    def test_adjust_size_adds_check_blocks(self) -> None:
        assert adjust_size(1) == 3 * SECURITY_PARAMETER
        assert adjust_size(OT_BATCH) == EXTENDED_ROWS
        assert EXTENDED_ROWS % SECURITY_PARAMETER == 0

    def test_gf_mul(self) -> None:
        assert gf_mul(0b11, 0b11) == 0b101
        assert gf_mul(5, 0) == 0
        assert gf_mul(1, 7) == 7

    def test_transpose(self) -> None:
        # column 0 = rows {0, 2}, column 1 = row {1}
        assert transpose([0b101, 0b010], 3) == [0b01, 0b10, 0b01]


class TestOTExtension:
    def test_receiver_gets_chosen_value(self, extension: tuple[ExtensionSender, ExtensionReceiver]) -> None:
        sender, receiver = extension
        pairs = sender.outputs()
        chosen = receiver.outputs()
        assert len(pairs) == len(chosen) == OT_BATCH
        for (v0, v1), (bit, v) in zip(pairs, chosen):
            assert v == (v1 if bit else v0)
            assert v0 != v1

    def test_wrong_base_count(self) -> None:
        receiver = ExtensionReceiver(SID)
        with pytest.raises(OTDesync):
            receiver.correlate([])

    def test_wrong_column_count(self) -> None:
        sender, receiver = ExtensionSender(SID), ExtensionReceiver(SID)
        sender.respond(receiver.big_y)
        with pytest.raises(OTDesync):
            sender.receive_correlation([0] * (SECURITY_PARAMETER - 1))

    def test_tampered_check_values(self) -> None:
        sender, receiver = ExtensionSender(SID), ExtensionReceiver(SID)
        u = receiver.correlate(sender.respond(receiver.big_y))
        seed = sender.receive_correlation(u)
        small_x, small_t = receiver.check_values(seed)
        small_t[0] ^= 1
        with pytest.raises(OTDesync):
            sender.verify(small_x, small_t)

    def test_short_check_vector(self) -> None:
        sender, receiver = ExtensionSender(SID), ExtensionReceiver(SID)
        seed = sender.receive_correlation(receiver.correlate(sender.respond(receiver.big_y)))
        small_x, small_t = receiver.check_values(seed)
        with pytest.raises(OTDesync):
            sender.verify(small_x, small_t[:-1])

    def test_erase(self) -> None:
        sender, receiver = ExtensionSender(SID), ExtensionReceiver(SID)
        sender.erase()
        receiver.erase()
        assert sender.delta == 0 and sender.keys == []
        assert receiver.y == 0 and receiver.t_columns == []


class TestMtA:
    def test_shares_add_to_product(self, extension: tuple[ExtensionSender, ExtensionReceiver]) -> None:
        sender, receiver = extension
        a, b = random_scalar(), random_scalar()
        mta_sender = MtASender(sender.outputs()[:MTA_BATCH], a)
        mta_receiver = MtAReceiver(receiver.outputs()[:MTA_BATCH], b)
        beta, chi1, seed = mta_receiver.respond(mta_sender.first_message())
        alpha = mta_sender.finish(chi1, seed)
        assert (alpha + beta) % ORDER == a * b % ORDER

    def test_second_half_is_independent(self, extension: tuple[ExtensionSender, ExtensionReceiver]) -> None:
        sender, receiver = extension
        a, b = random_scalar(), random_scalar()
        mta_sender = MtASender(sender.outputs()[MTA_BATCH:], a)
        mta_receiver = MtAReceiver(receiver.outputs()[MTA_BATCH:], b)
        beta, chi1, seed = mta_receiver.respond(mta_sender.first_message())
        assert (mta_sender.finish(chi1, seed) + beta) % ORDER == a * b % ORDER

    def test_wrong_length_rejected(self, extension: tuple[ExtensionSender, ExtensionReceiver]) -> None:
        _, receiver = extension
        mta_receiver = MtAReceiver(receiver.outputs()[:MTA_BATCH], 1)
        with pytest.raises(OTDesync):
            mta_receiver.respond([(0, 0)])

    def test_finish_before_first_message(self) -> None:
        with pytest.raises(OTDesync):
            MtASender([(1, 2)], 3).finish(0, b"\x00" * 32)

    def test_tampered_chi_breaks_product(self, extension: tuple[ExtensionSender, ExtensionReceiver]) -> None:
        sender, receiver = extension
        a, b = random_scalar(), random_scalar()
        mta_sender = MtASender(sender.outputs()[:MTA_BATCH], a)
        mta_receiver = MtAReceiver(receiver.outputs()[:MTA_BATCH], b)
        beta, chi1, seed = mta_receiver.respond(mta_sender.first_message())
        alpha = mta_sender.finish((chi1 + 1) % ORDER, seed)
        assert (alpha + beta) % ORDER != a * b % ORDER
