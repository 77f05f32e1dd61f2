"""Beaver triple generation between server and client.

A batch of ``2 * triples_count`` triples (a, b, c = a·b) is produced in
eleven steps. Each triple is Shamir-shared with public points A = a·G,
B = b·G, C = c·G so Presign can check its inputs.

Per triple, each party samples polynomials e, f, l (l(0) = 0), commits to
their images, proves knowledge of e(0) and f(0), exchanges private shares,
and publishes C_i = e_i(0)·F(0) with a dlogeq proof. The cross terms of
(Σe_i(0))·(Σf_i(0)) come from two MtA runs over OT extension. Finally
l(0) is set to the party's additive share of c, re-shared, and checked
against C.

A failed proof or opening drops only that triple. Anything wrong in the OT
subprotocol raises ``OTDesync`` and loses the whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from tecdsa_engine.core import messages
from tecdsa_engine.core.errors import (
    CommitmentVerificationFailed,
    MalformedMessage,
    OTDesync,
)
from tecdsa_engine.core.ot import (
    MTA_BATCH,
    SECURITY_PARAMETER,
    EXTENDED_ROWS,
    ExtensionReceiver,
    ExtensionSender,
    MtAReceiver,
    MtASender,
)
from tecdsa_engine.core.rounds import PARTICIPANTS, Phase, Role, RoundProtocol
from tecdsa_engine.utils.crypto import (
    DIGEST_BYTES,
    RANDOMIZER_BYTES,
    GroupPolynomial,
    Polynomial,
    Transcript,
    check_commitment,
    commit,
    confirmation_digest,
    evaluation_point,
)
from tecdsa_engine.utils.curve import (
    ORDER,
    ECPoint,
    base_mul,
    is_identity,
    point_add,
    point_mul,
    point_to_hex,
    points_equal,
    scalar_to_hex,
)
from tecdsa_engine.utils.proofs import (
    DlogEqProof,
    DlogProof,
    prove_dlog,
    prove_dlogeq,
    verify_dlog,
    verify_dlogeq,
)

log = structlog.get_logger()

_U_COLUMN_BYTES = EXTENDED_ROWS // 8
_CHECK_BITS = 2 * SECURITY_PARAMETER


def _encode_columns(columns: list[int]) -> str:
    """One hex string per bit matrix: fixed-width big-endian columns, concatenated."""
    return b"".join(c.to_bytes(_U_COLUMN_BYTES, "big") for c in columns).hex()


def _decode_columns(value: Any) -> list[int]:
    raw = messages.raw_bytes(value, SECURITY_PARAMETER * _U_COLUMN_BYTES, OTDesync)
    return [int.from_bytes(raw[i : i + _U_COLUMN_BYTES], "big") for i in range(0, len(raw), _U_COLUMN_BYTES)]


@dataclass(frozen=True)
class TriplePub:
    big_a: ECPoint
    big_b: ECPoint
    big_c: ECPoint
    participants: tuple[int, ...] = tuple(PARTICIPANTS)
    threshold: int = 2

    def to_wire(self) -> dict[str, Any]:
        return {
            "big_a": point_to_hex(self.big_a),
            "big_b": point_to_hex(self.big_b),
            "big_c": point_to_hex(self.big_c),
            "participants": list(self.participants),
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class TripleShare:
    a: int = field(repr=False)
    b: int = field(repr=False)
    c: int = field(repr=False)


@dataclass(frozen=True)
class GeneratedTriple:
    index: int
    pub: TriplePub
    share: TripleShare


@dataclass(frozen=True)
class TriplesOutput:
    triples: list[GeneratedTriple]
    dropped: list[int]

    def pairs(self) -> list[tuple[GeneratedTriple, GeneratedTriple]]:
        """Consecutive (2k, 2k+1) pairs where neither triple was dropped."""
        by_index = {t.index: t for t in self.triples}
        out = []
        for i in range(0, max(by_index, default=-1) + 1, 2):
            if i in by_index and i + 1 in by_index:
                out.append((by_index[i], by_index[i + 1]))
        return out


@dataclass
class _TripleRecord:
    """Everything one party knows about one triple, filled in step by step."""

    index: int
    e: Polynomial
    f: Polynomial
    l: Polynomial
    big_e: GroupPolynomial
    big_f: GroupPolynomial
    big_l: GroupPolynomial
    commitment: bytes
    randomizer: bytes
    peer_commitment: bytes = b""
    transcript: Transcript | None = None
    confirmation: bytes = b""
    proof0: DlogProof | None = None
    proof1: DlogProof | None = None
    peer_e0: ECPoint | None = None
    big_e_sum: GroupPolynomial | None = None
    big_f_sum: GroupPolynomial | None = None
    big_l_sum: GroupPolynomial | None = None
    a_share: int = 0
    b_share: int = 0
    big_c_own: ECPoint | None = None
    c_proof: DlogEqProof | None = None
    big_c: ECPoint | None = None
    ext_sender: ExtensionSender | None = None
    ext_receiver: ExtensionReceiver | None = None
    base_ot_out: list[ECPoint] = field(default_factory=list)
    u_out: list[int] = field(default_factory=list)
    seed_out: bytes = b""
    check_out: tuple[int, list[int]] | None = None
    mta_senders: tuple[MtASender, MtASender] | None = None
    mta_receivers: tuple[MtAReceiver, MtAReceiver] | None = None
    mta_out: list[tuple[int, bytes]] = field(default_factory=list)
    l0: int = 0
    hat_c_own: ECPoint | None = None
    hat_proof: DlogProof | None = None
    hat_c: ECPoint | None = None
    big_l_full: GroupPolynomial | None = None
    c_share: int = 0
    dropped: str | None = None

    def fork(self, label: bytes, participant: int) -> Transcript:
        assert self.transcript is not None
        return self.transcript.fork(label, participant.to_bytes(4, "big"))

    def ot_sid(self) -> bytes:
        assert self.transcript is not None
        return self.transcript.fork(b"ot", b"").digest()

    def erase(self) -> None:
        for poly in (self.e, self.f, self.l):
            poly.erase()
        self.a_share = self.b_share = self.c_share = self.l0 = 0
        if self.ext_sender is not None:
            self.ext_sender.erase()
        if self.ext_receiver is not None:
            self.ext_receiver.erase()
        for mta in (*(self.mta_senders or ()), *(self.mta_receivers or ())):
            mta.erase()


class TriplesProtocol(RoundProtocol):
    phase = Phase.TRIPLES
    EMITS = [
        {Role.SERVER: ("wait_0",), Role.CLIENT: ("wait_0",)},
        {Role.SERVER: ("wait_1",), Role.CLIENT: ("wait_1",)},
        {Role.SERVER: ("wait_2",), Role.CLIENT: ("wait_2",)},
        {Role.SERVER: ("wait_3",), Role.CLIENT: ("wait_3",)},
        {Role.SERVER: ("wait_4", "batch_random_ot_wait_0"), Role.CLIENT: ("wait_4", "batch_random_ot_wait_0")},
        {Role.SERVER: ("random_ot_extension_wait_0",), Role.CLIENT: ("correlated_ot_wait_0",)},
        {Role.SERVER: ("mta_wait_0",), Role.CLIENT: ("random_ot_extension_wait_1",)},
        {Role.SERVER: (), Role.CLIENT: ("mta_wait_1",)},
        {Role.SERVER: ("wait_5",), Role.CLIENT: ("wait_5",)},
        {Role.SERVER: ("wait_6",), Role.CLIENT: ("wait_6",)},
        {Role.SERVER: (), Role.CLIENT: ()},
    ]

    def __init__(
        self,
        role: Role,
        context: bytes = b"",
        triples_count: int = 1,
        threshold: int = 2,
    ) -> None:
        super().__init__(role, context)
        if triples_count < 1:
            raise ValueError("triples_count must be >= 1")
        if not 2 <= threshold <= len(PARTICIPANTS):
            raise ValueError(f"threshold must be 2..{len(PARTICIPANTS)}, got {threshold}")
        self.triples_count = triples_count
        self.threshold = threshold
        self.size = 2 * triples_count
        self._transcript = Transcript(b"tecdsa/triples")
        self._transcript.message(b"context", context)
        self._transcript.message(b"participants", bytes(PARTICIPANTS))
        self._transcript.message(b"threshold", threshold.to_bytes(4, "big"))
        self._transcript.message(b"size", self.size.to_bytes(4, "big"))
        self._records: list[_TripleRecord] = []
        self._wait_2_out: dict[str, list] = {}
        self._wait_6_out: dict[str, list] = {}
        self._me = evaluation_point(role.participant)
        self._peer = evaluation_point(role.peer.participant)

    # -- helpers ---------------------------------------------------------------

    def _per_triple(self, value: Any, name: str) -> list:
        if not isinstance(value, list) or len(value) != self.size:
            raise MalformedMessage(f"{name} must list {self.size} entries")
        return value

    def _per_triple_ot(self, value: Any, name: str) -> list:
        if not isinstance(value, list) or len(value) != self.size:
            raise OTDesync(f"{name} must list {self.size} entries")
        return value

    def _fields(self, body: Any, name: str, *keys: str) -> list[list]:
        if not isinstance(body, dict):
            raise MalformedMessage(f"{name} must be an object")
        return [self._per_triple(body.get(k), f"{name}.{k}") for k in keys]

    def _drop(self, rec: _TripleRecord, reason: str) -> None:
        if rec.dropped is None:
            rec.dropped = reason
            log.warning("triple_dropped", index=rec.index, reason=reason, role=self.role.name.lower())

    # -- stage 0: commitments --------------------------------------------------

    def _prepare_0(self) -> None:
        degree = self.threshold - 1
        for i in range(self.size):
            e = Polynomial.random(degree)
            f = Polynomial.random(degree)
            l = Polynomial.random(degree, constant=0)
            big_e, big_f, big_l = e.commit(), f.commit(), l.commit()
            commitment, randomizer = commit(big_e.to_bytes(), big_f.to_bytes(), big_l.to_bytes())
            self._records.append(_TripleRecord(i, e, f, l, big_e, big_f, big_l, commitment, randomizer))

    def _absorb_0(self, payloads: dict) -> None:
        values = self._per_triple(payloads["wait_0"], "wait_0")
        for rec, value in zip(self._records, values):
            rec.peer_commitment = messages.raw_bytes(value, DIGEST_BYTES)

    def _emit_0(self) -> dict:
        return {"wait_0": [rec.commitment.hex() for rec in self._records]}

    # -- stage 1: confirmations ------------------------------------------------

    def _prepare_1(self) -> None:
        me, peer = self.role.participant, self.role.peer.participant
        for rec in self._records:
            by_participant = {me: rec.commitment, peer: rec.peer_commitment}
            rec.confirmation = confirmation_digest([by_participant[p] for p in PARTICIPANTS])
            rec.transcript = self._transcript.fork(b"triple", rec.index.to_bytes(4, "big"))
            rec.transcript.message(b"confirmation", rec.confirmation)
            rec.proof0 = prove_dlog(rec.fork(b"dlog0", me), rec.e.constant, rec.big_e.constant)
            rec.proof1 = prove_dlog(rec.fork(b"dlog1", me), rec.f.constant, rec.big_f.constant)

    def _absorb_1(self, payloads: dict) -> None:
        values = self._per_triple(payloads["wait_1"], "wait_1")
        for rec, value in zip(self._records, values):
            if messages.raw_bytes(value, DIGEST_BYTES) != rec.confirmation:
                raise CommitmentVerificationFailed(f"Confirmation mismatch for triple {rec.index}")

    def _emit_1(self) -> dict:
        return {"wait_1": [rec.confirmation.hex() for rec in self._records]}

    # -- stage 2: openings and proofs ------------------------------------------

    def _prepare_2(self) -> None:
        self._wait_2_out = {
            "big_e_i_v": [rec.big_e.to_wire() for rec in self._records],
            "big_f_i_v": [rec.big_f.to_wire() for rec in self._records],
            "big_l_i_v": [rec.big_l.to_wire() for rec in self._records],
            "my_randomizers": [rec.randomizer.hex() for rec in self._records],
            "my_phi_proof0v": [rec.proof0.to_wire() for rec in self._records],
            "my_phi_proof1v": [rec.proof1.to_wire() for rec in self._records],
        }

    def _absorb_2(self, payloads: dict) -> None:
        big_es, big_fs, big_ls, rands, proofs0, proofs1 = self._fields(
            payloads["wait_2"],
            "wait_2",
            "big_e_i_v",
            "big_f_i_v",
            "big_l_i_v",
            "my_randomizers",
            "my_phi_proof0v",
            "my_phi_proof1v",
        )
        peer = self.role.peer.participant
        for i, rec in enumerate(self._records):
            peer_e = messages.decoded(lambda: GroupPolynomial.from_wire(big_es[i]))
            peer_f = messages.decoded(lambda: GroupPolynomial.from_wire(big_fs[i]))
            peer_l = messages.decoded(lambda: GroupPolynomial.from_wire(big_ls[i]))
            randomizer = messages.raw_bytes(rands[i], RANDOMIZER_BYTES)
            proof0 = messages.decoded(lambda: DlogProof.from_wire(proofs0[i]))
            proof1 = messages.decoded(lambda: DlogProof.from_wire(proofs1[i]))
            for poly in (peer_e, peer_f, peer_l):
                if len(poly) != self.threshold:
                    raise MalformedMessage(f"Triple {i} polynomial has the wrong degree")

            rec.peer_e0 = peer_e.constant
            rec.big_e_sum = rec.big_e + peer_e
            rec.big_f_sum = rec.big_f + peer_f
            rec.big_l_sum = rec.big_l + peer_l

            if not is_identity(peer_l.constant):
                self._drop(rec, "l(0) is not zero")
            elif not check_commitment(
                rec.peer_commitment, randomizer, peer_e.to_bytes(), peer_f.to_bytes(), peer_l.to_bytes()
            ):
                self._drop(rec, "commitment opening failed")
            elif not verify_dlog(rec.fork(b"dlog0", peer), peer_e.constant, proof0):
                self._drop(rec, "dlog proof for E(0) failed")
            elif not verify_dlog(rec.fork(b"dlog1", peer), peer_f.constant, proof1):
                self._drop(rec, "dlog proof for F(0) failed")

    def _emit_2(self) -> dict:
        return {"wait_2": self._wait_2_out}

    # -- stage 3: private shares of e and f ------------------------------------

    def _emit_3(self) -> dict:
        return {
            "wait_3": {
                "a_i_j_v": [scalar_to_hex(rec.e.evaluate(self._peer)) for rec in self._records],
                "b_i_j_v": [scalar_to_hex(rec.f.evaluate(self._peer)) for rec in self._records],
            }
        }

    def _absorb_3(self, payloads: dict) -> None:
        a_v, b_v = self._fields(payloads["wait_3"], "wait_3", "a_i_j_v", "b_i_j_v")
        me = self.role.participant
        for i, rec in enumerate(self._records):
            rec.a_share = (rec.e.evaluate(self._me) + messages.scalar(a_v[i])) % ORDER
            rec.b_share = (rec.f.evaluate(self._me) + messages.scalar(b_v[i])) % ORDER
            if not points_equal(rec.big_e_sum.evaluate(self._me), base_mul(rec.a_share)):
                self._drop(rec, "share of a inconsistent with E")
            elif not points_equal(rec.big_f_sum.evaluate(self._me), base_mul(rec.b_share)):
                self._drop(rec, "share of b inconsistent with F")
            big_f0 = rec.big_f_sum.constant
            rec.big_c_own = point_mul(big_f0, rec.e.constant)
            rec.c_proof = prove_dlogeq(
                rec.fork(b"dlogeq0", me), rec.e.constant, big_f0, rec.big_e.constant, rec.big_c_own
            )

    # -- stage 4: C_i with dlogeq proofs, base OT -------------------------------

    def _prepare_4(self) -> None:
        for rec in self._records:
            if self.role is Role.SERVER:
                rec.ext_sender = ExtensionSender(rec.ot_sid())
            else:
                rec.ext_receiver = ExtensionReceiver(rec.ot_sid())

    def _absorb_4(self, payloads: dict) -> None:
        points, proofs = self._fields(payloads["wait_4"], "wait_4", "big_c_i_points", "my_phi_proofs")
        peer = self.role.peer.participant
        for i, rec in enumerate(self._records):
            peer_c = messages.point(points[i])
            proof = messages.decoded(lambda: DlogEqProof.from_wire(proofs[i]))
            if not verify_dlogeq(rec.fork(b"dlogeq0", peer), rec.big_f_sum.constant, rec.peer_e0, peer_c, proof):
                self._drop(rec, "dlogeq proof for C failed")
            rec.big_c = point_add(rec.big_c_own, peer_c)

        ot = self._per_triple_ot(payloads["batch_random_ot_wait_0"], "batch_random_ot_wait_0")
        for rec, entry in zip(self._records, ot):
            if self.role is Role.SERVER:
                big_y = messages.sequence(entry, 1, lambda v: messages.point(v, OTDesync), OTDesync)[0]
                rec.base_ot_out = rec.ext_sender.respond(big_y)
            else:
                big_x = messages.sequence(
                    entry, SECURITY_PARAMETER, lambda v: messages.point(v, OTDesync), OTDesync
                )
                rec.u_out = rec.ext_receiver.correlate(big_x)

    def _emit_4(self) -> dict:
        wait_4 = {
            "big_c_i_points": [point_to_hex(rec.big_c_own) for rec in self._records],
            "my_phi_proofs": [rec.c_proof.to_wire() for rec in self._records],
        }
        if self.role is Role.SERVER:
            ot = [[point_to_hex(p) for p in rec.base_ot_out] for rec in self._records]
        else:
            ot = [[point_to_hex(rec.ext_receiver.big_y)] for rec in self._records]
        return {"wait_4": wait_4, "batch_random_ot_wait_0": ot}

    # -- stage 5: correlated OT (client) / check seed (server) -----------------

    def _absorb_5(self, payloads: dict) -> None:
        # server only: the client's u columns
        columns = self._per_triple_ot(payloads["correlated_ot_wait_0"], "correlated_ot_wait_0")
        for rec, entry in zip(self._records, columns):
            rec.seed_out = rec.ext_sender.receive_correlation(_decode_columns(entry))

    def _emit_5(self) -> dict:
        if self.role is Role.SERVER:
            return {"random_ot_extension_wait_0": [rec.seed_out.hex() for rec in self._records]}
        return {"correlated_ot_wait_0": [_encode_columns(rec.u_out) for rec in self._records]}

    # -- stage 6: consistency check (client) / MtA first message (server) ------

    def _absorb_5_client(self, payloads: dict) -> None:
        seeds = self._per_triple_ot(payloads["random_ot_extension_wait_0"], "random_ot_extension_wait_0")
        for rec, value in zip(self._records, seeds):
            seed = messages.raw_bytes(value, 32, OTDesync)
            rec.check_out = rec.ext_receiver.check_values(seed)
            rots = rec.ext_receiver.outputs()
            rec.mta_receivers = (
                MtAReceiver(rots[:MTA_BATCH], rec.f.constant),
                MtAReceiver(rots[MTA_BATCH:], rec.e.constant),
            )

    def _absorb_6(self, payloads: dict) -> None:
        # server only: verify the client's check values, then set up MtA
        entries = self._per_triple_ot(payloads["random_ot_extension_wait_1"], "random_ot_extension_wait_1")
        for rec, entry in zip(self._records, entries):
            if not isinstance(entry, list) or len(entry) != 2:
                raise OTDesync("Check values must be [small_x, small_t]")
            small_x = messages.bits(entry[0], _CHECK_BITS, OTDesync)
            small_t = messages.sequence(
                entry[1],
                SECURITY_PARAMETER,
                lambda v: messages.bits(v, _CHECK_BITS, OTDesync),
                OTDesync,
            )
            rec.ext_sender.verify(small_x, small_t)
            pairs = rec.ext_sender.outputs()
            rec.mta_senders = (
                MtASender(pairs[:MTA_BATCH], rec.e.constant),
                MtASender(pairs[MTA_BATCH:], rec.f.constant),
            )

    def _emit_6(self) -> dict:
        if self.role is Role.CLIENT:
            return {
                "random_ot_extension_wait_1": [
                    [format(rec.check_out[0], "x"), [format(t, "x") for t in rec.check_out[1]]]
                    for rec in self._records
                ]
            }
        c1_v, c2_v = [], []
        for rec in self._records:
            first, second = rec.mta_senders
            c1_v.append([[scalar_to_hex(c0), scalar_to_hex(c1)] for c0, c1 in first.first_message()])
            c2_v.append([[scalar_to_hex(c0), scalar_to_hex(c1)] for c0, c1 in second.first_message()])
        return {"mta_wait_0": {"c1_v": c1_v, "c2_v": c2_v}}

    # -- stage 7: MtA second message -------------------------------------------

    def _absorb_6_client(self, payloads: dict) -> None:
        body = payloads["mta_wait_0"]
        if not isinstance(body, dict):
            raise OTDesync("mta_wait_0 must be an object")
        c1_v = self._per_triple_ot(body.get("c1_v"), "mta_wait_0.c1_v")
        c2_v = self._per_triple_ot(body.get("c2_v"), "mta_wait_0.c2_v")
        for rec, c1, c2 in zip(self._records, c1_v, c2_v):
            first, second = rec.mta_receivers
            beta1, chi1_a, seed_a = first.respond(self._mta_pairs(c1))
            beta2, chi1_b, seed_b = second.respond(self._mta_pairs(c2))
            rec.mta_out = [(chi1_a, seed_a), (chi1_b, seed_b)]
            rec.l0 = (rec.e.constant * rec.f.constant + beta1 + beta2) % ORDER

    def _mta_pairs(self, value: Any) -> list[tuple[int, int]]:
        def pair(v: Any) -> tuple[int, int]:
            if not isinstance(v, list) or len(v) != 2:
                raise OTDesync("MtA entry must be a pair")
            return messages.scalar(v[0], OTDesync), messages.scalar(v[1], OTDesync)

        return messages.sequence(value, MTA_BATCH, pair, OTDesync)

    def _emit_7(self) -> dict:
        if self.role is Role.SERVER:
            return {}
        return {
            "mta_wait_1": {
                "chi1_seed_1_v": [[scalar_to_hex(rec.mta_out[0][0]), rec.mta_out[0][1].hex()] for rec in self._records],
                "chi1_seed_2_v": [[scalar_to_hex(rec.mta_out[1][0]), rec.mta_out[1][1].hex()] for rec in self._records],
            }
        }

    def _absorb_7(self, payloads: dict) -> None:
        # server only: finish both MtA instances
        body = payloads["mta_wait_1"]
        if not isinstance(body, dict):
            raise OTDesync("mta_wait_1 must be an object")
        first_v = self._per_triple_ot(body.get("chi1_seed_1_v"), "mta_wait_1.chi1_seed_1_v")
        second_v = self._per_triple_ot(body.get("chi1_seed_2_v"), "mta_wait_1.chi1_seed_2_v")
        for rec, first, second in zip(self._records, first_v, second_v):
            chi_a, seed_a = self._chi_seed(first)
            chi_b, seed_b = self._chi_seed(second)
            alpha1 = rec.mta_senders[0].finish(chi_a, seed_a)
            alpha2 = rec.mta_senders[1].finish(chi_b, seed_b)
            rec.l0 = (rec.e.constant * rec.f.constant + alpha1 + alpha2) % ORDER

    def _chi_seed(self, value: Any) -> tuple[int, bytes]:
        if not isinstance(value, list) or len(value) != 2:
            raise OTDesync("MtA response must be [chi1, seed]")
        return messages.scalar(value[0], OTDesync), messages.raw_bytes(value[1], 32, OTDesync)

    # -- stage 8: hat C with dlog proof ----------------------------------------

    def _prepare_8(self) -> None:
        me = self.role.participant
        for rec in self._records:
            rec.l.set_constant(rec.l0)
            rec.hat_c_own = base_mul(rec.l0)
            rec.hat_proof = prove_dlog(rec.fork(b"dlog2", me), rec.l0, rec.hat_c_own)

    def _absorb_8(self, payloads: dict) -> None:
        points, proofs = self._fields(payloads["wait_5"], "wait_5", "hat_big_c_i_points", "my_phi_proofs")
        peer = self.role.peer.participant
        for i, rec in enumerate(self._records):
            peer_hat = messages.point(points[i])
            proof = messages.decoded(lambda: DlogProof.from_wire(proofs[i]))
            if not verify_dlog(rec.fork(b"dlog2", peer), peer_hat, proof):
                self._drop(rec, "dlog proof for hat C failed")
            rec.hat_c = point_add(rec.hat_c_own, peer_hat)

    def _emit_8(self) -> dict:
        return {
            "wait_5": {
                "hat_big_c_i_points": [point_to_hex(rec.hat_c_own) for rec in self._records],
                "my_phi_proofs": [rec.hat_proof.to_wire() for rec in self._records],
            }
        }

    # -- stage 9: shares of c ----------------------------------------------------

    def _prepare_9(self) -> None:
        for rec in self._records:
            rec.big_l_full = rec.big_l_sum.with_constant(rec.hat_c)
            if not points_equal(rec.hat_c, rec.big_c):
                self._drop(rec, "L(0) differs from C")
        # the server erases its polynomials while absorbing, before it emits
        self._wait_6_out = {"c_i_j_v": [scalar_to_hex(rec.l.evaluate(self._peer)) for rec in self._records]}

    def _emit_9(self) -> dict:
        out, self._wait_6_out = self._wait_6_out, {}
        return {"wait_6": out}

    def _absorb_9(self, payloads: dict) -> None:
        (c_v,) = self._fields(payloads["wait_6"], "wait_6", "c_i_j_v")
        for i, rec in enumerate(self._records):
            rec.c_share = (rec.l.evaluate(self._me) + messages.scalar(c_v[i])) % ORDER
            if not points_equal(rec.big_l_full.evaluate(self._me), base_mul(rec.c_share)):
                self._drop(rec, "share of c inconsistent with L")
        self._finish()

    # -- role dispatch for the asymmetric OT stages -----------------------------

    def _hook(self, kind: str, stage: int, *args: Any) -> Any:
        if kind == "absorb" and self.role is Role.CLIENT:
            if stage in (5, 6):
                return getattr(self, f"_absorb_{stage}_client")(*args)
            if stage == 7:
                # server sends nothing at stage 7
                return None
        return super()._hook(kind, stage, *args)

    # -- output ------------------------------------------------------------------

    def _finish(self) -> None:
        triples, dropped = [], []
        for rec in self._records:
            if rec.dropped is not None:
                dropped.append(rec.index)
                continue
            pub = TriplePub(
                big_a=rec.big_e_sum.constant,
                big_b=rec.big_f_sum.constant,
                big_c=rec.big_c,
                participants=tuple(PARTICIPANTS),
                threshold=self.threshold,
            )
            share = TripleShare(a=rec.a_share, b=rec.b_share, c=rec.c_share)
            triples.append(GeneratedTriple(rec.index, pub, share))
        self._output = TriplesOutput(triples=triples, dropped=dropped)
        for rec in self._records:
            rec.erase()
        log.info(
            "triples_generated",
            role=self.role.name.lower(),
            generated=len(triples),
            dropped=len(dropped),
        )

    @property
    def output(self) -> TriplesOutput:
        out = getattr(self, "_output", None)
        if not self.complete or out is None:
            raise MalformedMessage("Triple generation has not completed")
        return out

    def _erase(self) -> None:
        for rec in self._records:
            rec.erase()
        self._records = []
