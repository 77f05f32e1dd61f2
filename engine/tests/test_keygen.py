"""Tests for distributed key generation."""

from __future__ import annotations

import pytest

from tecdsa_engine.core.errors import (
    CommitmentVerificationFailed,
    MalformedMessage,
    PublicKeyMismatch,
    RoundOutOfOrder,
)
from tecdsa_engine.core.keygen import KeygenOutput, KeygenProtocol
from tecdsa_engine.core.rounds import Phase, Role, SessionKey
from tecdsa_engine.utils.crypto import combine_shares
from tecdsa_engine.utils.curve import base_mul, point_to_hex, points_equal

CTX = SessionKey("alice", "kg-1").context(Phase.KEYGEN)


def _pair() -> tuple[KeygenProtocol, KeygenProtocol]:
    return KeygenProtocol(Role.SERVER, CTX), KeygenProtocol(Role.CLIENT, CTX)


class TestKeygenHappyPath:
    def test_five_steps(self) -> None:
        server, _ = _pair()
        assert server.total_steps == 5

    def test_parties_agree_on_public_key(self, keygen_outputs: dict[int, KeygenOutput]) -> None:
        assert points_equal(keygen_outputs[0].public_key, keygen_outputs[1].public_key)

    def test_shares_reconstruct_private_key(self, keygen_outputs: dict[int, KeygenOutput]) -> None:
        x = combine_shares({p: out.private_share for p, out in keygen_outputs.items()})
        assert points_equal(base_mul(x), keygen_outputs[0].public_key)

    def test_shares_differ(self, keygen_outputs: dict[int, KeygenOutput]) -> None:
        assert keygen_outputs[0].private_share != keygen_outputs[1].private_share

    def test_participants_recorded(self, keygen_outputs: dict[int, KeygenOutput]) -> None:
        assert keygen_outputs[0].participant == 0
        assert keygen_outputs[1].participant == 1

    def test_private_share_not_in_repr(self, keygen_outputs: dict[int, KeygenOutput]) -> None:
        assert "private_share" not in repr(keygen_outputs[0])

    def test_both_parties_complete(self, drive) -> None:
        server, client = _pair()
        drive(server, client)
        assert server.complete and client.complete

    def test_server_confirms_public_key_at_step_four(self) -> None:
        server, client = _pair()
        inbound, conf = {}, None
        for step in range(1, 5):
            c = client.run_step(step, inbound, conf)
            s = server.run_step(step, c.outbound, c.confirmation)
            inbound, conf = s.outbound, s.confirmation
        assert conf is not None
        c = client.run_step(5, inbound, conf)
        assert c.confirmation == conf
        s = server.run_step(5, c.outbound, c.confirmation)
        assert s.complete
        assert s.outbound == {}


class TestKeygenFailures:
    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            KeygenProtocol(Role.SERVER, CTX, threshold=3)

    def test_step_out_of_order(self) -> None:
        server, _ = _pair()
        with pytest.raises(RoundOutOfOrder) as exc:
            server.run_step(2, {})
        assert exc.value.expected == 1
        assert exc.value.received == 2

    def test_wrong_sender_rejected(self) -> None:
        server, client = _pair()
        c = client.run_step(1)
        forged = {"wait_0": {"0": c.outbound["wait_0"]["1"]}}
        with pytest.raises(MalformedMessage):
            server.run_step(1, forged)

    def test_unexpected_field_rejected(self) -> None:
        server, client = _pair()
        c = client.run_step(1)
        envelope = dict(c.outbound)
        envelope["extra"] = {"1": "00"}
        with pytest.raises(MalformedMessage):
            server.run_step(1, envelope)

    def test_client_step_one_takes_no_payload(self) -> None:
        _, client = _pair()
        with pytest.raises(MalformedMessage):
            client.run_step(1, {"wait_0": {"0": "00" * 32}})

    def test_tampered_confirmation_is_fatal(self) -> None:
        server, client = _pair()
        s = server.run_step(1, client.run_step(1).outbound)
        c = client.run_step(2, s.outbound)
        s = server.run_step(2, c.outbound)
        s.outbound["wait_1"]["0"] = "00" * 32
        with pytest.raises(CommitmentVerificationFailed):
            client.run_step(3, s.outbound)
        assert client.erased
        with pytest.raises(MalformedMessage):
            client.run_step(3, s.outbound)

    def test_public_key_mismatch(self) -> None:
        server, client = _pair()
        inbound, conf = {}, None
        for step in range(1, 5):
            c = client.run_step(step, inbound, conf)
            s = server.run_step(step, c.outbound, c.confirmation)
            inbound, conf = s.outbound, s.confirmation
        with pytest.raises(PublicKeyMismatch):
            client.run_step(5, inbound, point_to_hex(base_mul(5)))

    def test_missing_confirmation(self) -> None:
        server, client = _pair()
        inbound, conf = {}, None
        for step in range(1, 5):
            c = client.run_step(step, inbound, conf)
            s = server.run_step(step, c.outbound, c.confirmation)
            inbound, conf = s.outbound, s.confirmation
        with pytest.raises(MalformedMessage):
            client.run_step(5, inbound, None)

    def test_output_before_completion(self) -> None:
        server, _ = _pair()
        with pytest.raises(MalformedMessage):
            _ = server.output

    def test_erase_clears_output(self, drive) -> None:
        server, client = _pair()
        drive(server, client)
        server.erase()
        with pytest.raises(MalformedMessage):
            server.run_step(6)
