"""Tests for the SQLite consumption ledger."""

from __future__ import annotations

from pathlib import Path

import pytest

from tecdsa_engine.core.dealer import deal_triple
from tecdsa_engine.core.errors import (
    PresignAlreadyConsumed,
    PresignUnavailable,
    TripleAlreadyConsumed,
    TripleUnavailable,
)
from tecdsa_engine.core.ledger import ConsumptionLedger, TripleHandle
from tecdsa_engine.core.presign import PresignOutput
from tecdsa_engine.utils.curve import base_mul


@pytest.fixture
def ledger() -> ConsumptionLedger:
    led = ConsumptionLedger()
    yield led
    led.close()


def _add_batch(ledger: ConsumptionLedger, user: str = "alice", batch: str = "b1") -> list[TripleHandle]:
    return ledger.add_triples(user, batch, [deal_triple(0)[0], deal_triple(1)[0]])


def _presign() -> PresignOutput:
    return PresignOutput(big_r=base_mul(5), k=3, sigma=7)


class TestTripleHandle:
    def test_round_trip(self) -> None:
        handle = TripleHandle("batch-1", 3)
        assert TripleHandle.parse(str(handle)) == handle

    def test_batch_id_may_contain_colons(self) -> None:
        assert TripleHandle.parse("a:b:2") == TripleHandle("a:b", 2)

    @pytest.mark.parametrize("value", ["", "batch", "batch:", ":1", "batch:x", "batch:-1"])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            TripleHandle.parse(value)


class TestTriples:
    def test_add_returns_handles(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        assert [str(h) for h in handles] == ["b1:0", "b1:1"]
        assert [h for h, _ in ledger.available_triples("alice")] == handles

    def test_inventory_is_per_user(self, ledger: ConsumptionLedger) -> None:
        _add_batch(ledger)
        assert ledger.available_triples("bob") == []

    def test_consume(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        claimed = ledger.consume_triples("alice", handles, consumed_by="ps-1")
        assert [t.index for t in claimed] == [0, 1]
        assert ledger.available_triples("alice") == []

    def test_reuse_rejected(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        ledger.consume_triples("alice", handles, consumed_by="ps-1")
        with pytest.raises(TripleAlreadyConsumed):
            ledger.consume_triples("alice", handles, consumed_by="ps-2")

    def test_same_handle_twice_rejected(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        with pytest.raises(TripleAlreadyConsumed):
            ledger.consume_triples("alice", [handles[0], handles[0]], consumed_by="ps-1")
        assert len(ledger.available_triples("alice")) == 2

    def test_unknown_handle(self, ledger: ConsumptionLedger) -> None:
        with pytest.raises(TripleUnavailable):
            ledger.consume_triples("alice", [TripleHandle("nope", 0)], consumed_by="ps-1")

    def test_other_users_triple_unavailable(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger, user="bob")
        with pytest.raises(TripleUnavailable):
            ledger.consume_triples("alice", handles, consumed_by="ps-1")

    def test_claim_is_all_or_nothing(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        with pytest.raises(TripleUnavailable):
            ledger.consume_triples("alice", [handles[0], TripleHandle("b1", 9)], consumed_by="ps-1")
        assert len(ledger.available_triples("alice")) == 2
        assert len(ledger.consume_triples("alice", handles, consumed_by="ps-2")) == 2

    def test_counts(self, ledger: ConsumptionLedger) -> None:
        handles = _add_batch(ledger)
        ledger.consume_triples("alice", handles[:1], consumed_by="ps-1")
        counts = ledger.counts()
        assert counts["available_triples"] == 1
        assert counts["consumed_triples"] == 1


class TestPresigns:
    def test_consume(self, ledger: ConsumptionLedger) -> None:
        ledger.add_presign("alice", "ps-1", _presign(), wallet_id="w1")
        assert ledger.available_presigns("alice") == ["ps-1"]
        stored = ledger.consume_presign("alice", "ps-1", consumed_by="sig-1")
        assert stored.wallet_id == "w1"
        assert stored.output.sigma == 7
        assert ledger.available_presigns("alice") == []

    def test_reuse_rejected(self, ledger: ConsumptionLedger) -> None:
        ledger.add_presign("alice", "ps-1", _presign(), wallet_id="w1")
        ledger.consume_presign("alice", "ps-1", consumed_by="sig-1")
        with pytest.raises(PresignAlreadyConsumed):
            ledger.consume_presign("alice", "ps-1", consumed_by="sig-2")

    def test_unknown(self, ledger: ConsumptionLedger) -> None:
        with pytest.raises(PresignUnavailable):
            ledger.consume_presign("alice", "missing", consumed_by="sig-1")

    def test_other_user(self, ledger: ConsumptionLedger) -> None:
        ledger.add_presign("bob", "ps-1", _presign(), wallet_id="w1")
        with pytest.raises(PresignUnavailable):
            ledger.consume_presign("alice", "ps-1", consumed_by="sig-1")


class TestPersistence:
    def test_consumption_survives_restart(self, tmp_path: Path) -> None:
        db = tmp_path / "sub" / "ledger.db"
        first = ConsumptionLedger(db)
        handles = _add_batch(first)
        first.consume_triples("alice", handles, consumed_by="ps-1")
        first.add_presign("alice", "ps-1", _presign(), wallet_id="w1")
        first.consume_presign("alice", "ps-1", consumed_by="sig-1")
        first.close()

        second = ConsumptionLedger(db)
        try:
            assert second.counts()["consumed_triples"] == 2
            # a restarted server that somehow re-learns the triple still refuses it
            second.add_triples("alice", "b1", [deal_triple(0)[0]])
            with pytest.raises(TripleAlreadyConsumed):
                second.consume_triples("alice", [handles[0]], consumed_by="ps-2")
            second.add_presign("alice", "ps-1", _presign(), wallet_id="w1")
            with pytest.raises(PresignAlreadyConsumed):
                second.consume_presign("alice", "ps-1", consumed_by="sig-2")
        finally:
            second.close()

    def test_unconsumed_inventory_is_not_persisted(self, tmp_path: Path) -> None:
        db = tmp_path / "ledger.db"
        first = ConsumptionLedger(db)
        _add_batch(first)
        first.close()
        second = ConsumptionLedger(db)
        try:
            assert second.available_triples("alice") == []
        finally:
            second.close()
