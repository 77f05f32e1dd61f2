"""Distributed key generation between server and client.

Five steps, each party contributing a random polynomial f of degree
threshold-1:

  1. commit to F = f·G                        (wait_0)
  2. confirm the hash of both commitments     (wait_1)
  3. open F with a dlog proof of f(0)         (wait_2)
  4. send the private share f(peer + 1)       (wait_3); server confirms its public key
  5. finalize; client confirms its public key

Neither party learns the other's share. Any failed check is fatal: the
engine erases its polynomial and the session must start over.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tecdsa_engine.core import messages
from tecdsa_engine.core.errors import (
    CommitmentVerificationFailed,
    MalformedMessage,
    ProofVerificationFailed,
    PublicKeyMismatch,
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
    point_to_hex,
    points_equal,
    scalar_to_hex,
)
from tecdsa_engine.utils.proofs import DlogProof, prove_dlog, verify_dlog


@dataclass(frozen=True)
class KeygenOutput:
    """One party's result. ``private_share`` never leaves its owner."""

    private_share: int = field(repr=False)
    public_key: ECPoint
    participant: int
    threshold: int = 2

    @property
    def public_key_hex(self) -> str:
        return point_to_hex(self.public_key)


# Stage-tagged state: each stage carries exactly what later steps need.


@dataclass
class _Committed:
    poly: Polynomial
    big_f: GroupPolynomial
    commitment: bytes
    randomizer: bytes
    peer_commitment: bytes | None = None


@dataclass
class _Confirmed:
    poly: Polynomial
    big_f: GroupPolynomial
    randomizer: bytes
    peer_commitment: bytes
    confirmation: bytes
    proof: DlogProof


@dataclass
class _Revealed:
    poly: Polynomial
    big_f_sum: GroupPolynomial
    own_share: int
    peer_share_out: int


@dataclass
class _Finished:
    output: KeygenOutput


KeygenState = _Committed | _Confirmed | _Revealed | _Finished


class KeygenProtocol(RoundProtocol):
    phase = Phase.KEYGEN
    EMITS = [
        {Role.SERVER: ("wait_0",), Role.CLIENT: ("wait_0",)},
        {Role.SERVER: ("wait_1",), Role.CLIENT: ("wait_1",)},
        {Role.SERVER: ("wait_2",), Role.CLIENT: ("wait_2",)},
        {Role.SERVER: ("wait_3",), Role.CLIENT: ("wait_3",)},
        {Role.SERVER: (), Role.CLIENT: ()},
    ]

    def __init__(self, role: Role, context: bytes = b"", threshold: int = 2) -> None:
        super().__init__(role, context)
        if not 2 <= threshold <= len(PARTICIPANTS):
            raise ValueError(f"threshold must be 2..{len(PARTICIPANTS)}, got {threshold}")
        self.threshold = threshold
        self._transcript = Transcript(b"tecdsa/keygen")
        self._transcript.message(b"context", context)
        self._transcript.message(b"participants", bytes(PARTICIPANTS))
        self._transcript.message(b"threshold", threshold.to_bytes(4, "big"))
        self._state: KeygenState | None = None
        self._share_out = 0
        self._reveal_out: dict = {}

    def _expect(self, cls: type) -> KeygenState:
        if not isinstance(self._state, cls):
            raise MalformedMessage(f"Keygen is not in stage {cls.__name__}")
        return self._state

    def _proof_transcript(self, participant: int) -> Transcript:
        return self._transcript.fork(b"dlog0", participant.to_bytes(4, "big"))

    # -- stage 0: commitment -------------------------------------------------

    def _prepare_0(self) -> None:
        poly = Polynomial.random(self.threshold - 1)
        big_f = poly.commit()
        commitment, randomizer = commit(big_f.to_bytes())
        self._state = _Committed(poly, big_f, commitment, randomizer)

    def _absorb_0(self, payloads: dict) -> None:
        st = self._expect(_Committed)
        st.peer_commitment = messages.raw_bytes(payloads["wait_0"], DIGEST_BYTES)

    def _emit_0(self) -> dict:
        st = self._expect(_Committed)
        return {"wait_0": st.commitment.hex()}

    # -- stage 1: confirmation -----------------------------------------------

    def _prepare_1(self) -> None:
        st = self._expect(_Committed)
        if st.peer_commitment is None:
            raise MalformedMessage("Peer commitment missing")
        by_participant = {self.role.participant: st.commitment, self.role.peer.participant: st.peer_commitment}
        confirmation = confirmation_digest([by_participant[p] for p in PARTICIPANTS])
        self._transcript.message(b"confirmation", confirmation)
        proof = prove_dlog(self._proof_transcript(self.role.participant), st.poly.constant, st.big_f.constant)
        self._state = _Confirmed(
            poly=st.poly,
            big_f=st.big_f,
            randomizer=st.randomizer,
            peer_commitment=st.peer_commitment,
            confirmation=confirmation,
            proof=proof,
        )

    def _absorb_1(self, payloads: dict) -> None:
        st = self._expect(_Confirmed)
        peer_confirmation = messages.raw_bytes(payloads["wait_1"], DIGEST_BYTES)
        if peer_confirmation != st.confirmation:
            raise CommitmentVerificationFailed("Commitment confirmations differ")

    def _emit_1(self) -> dict:
        st = self._expect(_Confirmed)
        return {"wait_1": st.confirmation.hex()}

    # -- stage 2: reveal with proof ------------------------------------------

    def _prepare_2(self) -> None:
        st = self._expect(_Confirmed)
        self._reveal_out = {
            "big_f": st.big_f.to_wire(),
            "randomizer": st.randomizer.hex(),
            "proof": st.proof.to_wire(),
        }

    def _emit_2(self) -> dict:
        return {"wait_2": self._reveal_out}

    def _absorb_2(self, payloads: dict) -> None:
        st = self._expect(_Confirmed)
        body = payloads["wait_2"]
        if not isinstance(body, dict):
            raise MalformedMessage("wait_2 must be an object")
        peer_big_f = messages.decoded(lambda: GroupPolynomial.from_wire(body["big_f"]))
        randomizer = messages.raw_bytes(body.get("randomizer"), RANDOMIZER_BYTES)
        proof = messages.decoded(lambda: DlogProof.from_wire(body["proof"]))
        if len(peer_big_f) != self.threshold:
            raise MalformedMessage(f"Peer polynomial has {len(peer_big_f)} coefficients, expected {self.threshold}")
        if not check_commitment(st.peer_commitment, randomizer, peer_big_f.to_bytes()):
            raise CommitmentVerificationFailed("Peer polynomial does not open its commitment")
        if not verify_dlog(self._proof_transcript(self.role.peer.participant), peer_big_f.constant, proof):
            raise ProofVerificationFailed("Peer dlog proof rejected")

        me = evaluation_point(self.role.participant)
        peer = evaluation_point(self.role.peer.participant)
        self._state = _Revealed(
            poly=st.poly,
            big_f_sum=st.big_f + peer_big_f,
            own_share=st.poly.evaluate(me),
            peer_share_out=st.poly.evaluate(peer),
        )

    # -- stage 3: private shares ---------------------------------------------

    def _prepare_3(self) -> None:
        st = self._expect(_Revealed)
        self._share_out = st.peer_share_out

    def _emit_3(self) -> dict:
        if self.role is Role.SERVER:
            # server finalized while absorbing the client share
            self._confirmation_out = self._expect(_Finished).output.public_key_hex
        share, self._share_out = self._share_out, 0
        return {"wait_3": scalar_to_hex(share)}

    def _absorb_3(self, payloads: dict) -> None:
        st = self._expect(_Revealed)
        x_j = messages.scalar(payloads["wait_3"])
        x_i = (st.own_share + x_j) % ORDER
        if not points_equal(st.big_f_sum.evaluate(evaluation_point(self.role.participant)), base_mul(x_i)):
            raise ProofVerificationFailed("Private share inconsistent with committed polynomials")
        st.poly.erase()
        self._state = _Finished(
            KeygenOutput(
                private_share=x_i,
                public_key=st.big_f_sum.constant,
                participant=self.role.participant,
                threshold=self.threshold,
            )
        )

    # -- stage 4: public key cross-check -------------------------------------

    def _prepare_4(self) -> None:
        st = self._expect(_Finished)
        peer_key = messages.point(self.require_confirmation())
        if not points_equal(peer_key, st.output.public_key):
            raise PublicKeyMismatch("Peer derived a different public key")
        if self.role is Role.CLIENT:
            self._confirmation_out = st.output.public_key_hex

    @property
    def output(self) -> KeygenOutput:
        if not self.complete or not isinstance(self._state, _Finished):
            raise MalformedMessage("Keygen has not completed")
        return self._state.output

    def _erase(self) -> None:
        st = self._state
        if st is not None and hasattr(st, "poly"):
            st.poly.erase()
        self._state = None
        self._share_out = 0
