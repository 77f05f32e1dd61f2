"""Presignature computation from a key share and two Beaver triples.

Triple 0 shares (k, d, kd), triple 1 shares (a, b, ab). Over three steps the
parties open kd, k + a and x + b, then derive R = (kd)^-1·D = k^-1·G and a
Shamir share of sigma = k·x. Both values are independent of the message, so
Sign only needs one more exchange.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tecdsa_engine.core import messages
from tecdsa_engine.core.errors import (
    MalformedMessage,
    PresignMismatch,
    ProofVerificationFailed,
)
from tecdsa_engine.core.keygen import KeygenOutput
from tecdsa_engine.core.rounds import PARTICIPANTS, Phase, Role, RoundProtocol
from tecdsa_engine.core.triples import GeneratedTriple
from tecdsa_engine.utils.crypto import lagrange_coefficient
from tecdsa_engine.utils.curve import (
    ORDER,
    ECPoint,
    base_mul,
    point_add,
    point_mul,
    point_to_hex,
    points_equal,
    scalar_inv,
    scalar_to_hex,
)


@dataclass(frozen=True)
class PresignOutput:
    big_r: ECPoint
    k: int = field(repr=False)
    sigma: int = field(repr=False)

    @property
    def big_r_hex(self) -> str:
        return point_to_hex(self.big_r)


class PresignProtocol(RoundProtocol):
    phase = Phase.PRESIGN
    EMITS = [
        {Role.SERVER: ("wait_0",), Role.CLIENT: ("wait_0",)},
        {Role.SERVER: ("wait_1",), Role.CLIENT: ("wait_1",)},
        {Role.SERVER: (), Role.CLIENT: ()},
    ]

    def __init__(
        self,
        role: Role,
        context: bytes,
        keygen_out: KeygenOutput,
        triple0: GeneratedTriple,
        triple1: GeneratedTriple,
    ) -> None:
        super().__init__(role, context)
        if keygen_out.participant != role.participant:
            raise ValueError("Key share belongs to the other role")
        for triple in (triple0, triple1):
            if tuple(triple.pub.participants) != tuple(PARTICIPANTS):
                raise ValueError("Triple was generated for different participants")
        self.public_key = keygen_out.public_key
        self._x = keygen_out.private_share
        self._t0 = triple0
        self._t1 = triple1
        self._lambda = lagrange_coefficient(role.participant, PARTICIPANTS)
        self._kd_i = 0
        self._kd_j = 0
        self._ka_i = self._xb_i = 0
        self._ka_j = self._xb_j = 0
        self._output: PresignOutput | None = None

    # -- stage 0: kd ---------------------------------------------------------

    def _prepare_0(self) -> None:
        self._kd_i = self._lambda * self._t0.share.c % ORDER

    def _absorb_0(self, payloads: dict) -> None:
        self._kd_j = messages.scalar(payloads["wait_0"])

    def _emit_0(self) -> dict:
        return {"wait_0": scalar_to_hex(self._kd_i)}

    # -- stage 1: k + a and x + b --------------------------------------------

    def _prepare_1(self) -> None:
        if self._kd_j == 0:
            raise MalformedMessage("Peer sent a zero kd share")
        lam = self._lambda
        self._ka_i = (lam * self._t0.share.a + lam * self._t1.share.a) % ORDER
        self._xb_i = (lam * self._x + lam * self._t1.share.b) % ORDER

    def _absorb_1(self, payloads: dict) -> None:
        self._ka_j, self._xb_j = messages.sequence(payloads["wait_1"], 2, messages.scalar)

    def _emit_1(self) -> dict:
        return {"wait_1": [scalar_to_hex(self._ka_i), scalar_to_hex(self._xb_i)]}

    # -- stage 2: combine ----------------------------------------------------

    def _prepare_2(self) -> None:
        pub0, pub1 = self._t0.pub, self._t1.pub
        kd = (self._kd_i + self._kd_j) % ORDER
        if kd == 0 or not points_equal(base_mul(kd), pub0.big_c):
            raise ProofVerificationFailed("Opened kd does not match triple commitment")
        ka = (self._ka_i + self._ka_j) % ORDER
        if not points_equal(base_mul(ka), point_add(pub0.big_a, pub1.big_a)):
            raise ProofVerificationFailed("Opened k + a does not match triple commitments")
        xb = (self._xb_i + self._xb_j) % ORDER
        if not points_equal(base_mul(xb), point_add(self.public_key, pub1.big_b)):
            raise ProofVerificationFailed("Opened x + b does not match key and triple")

        big_r = point_mul(pub0.big_b, scalar_inv(kd))
        share0, share1 = self._t0.share, self._t1.share
        sigma = (ka * self._x - (xb * share1.a - share1.c)) % ORDER
        output = PresignOutput(big_r=big_r, k=share0.a, sigma=sigma)

        if self.role is Role.SERVER:
            peer_r = messages.point(self.require_confirmation())
            if not points_equal(peer_r, big_r):
                raise PresignMismatch("Peer derived a different R")
        else:
            self._confirmation_out = output.big_r_hex
        self._output = output

    @property
    def output(self) -> PresignOutput:
        if not self.complete or self._output is None:
            raise MalformedMessage("Presign has not completed")
        return self._output

    def _erase(self) -> None:
        self._x = 0
        self._kd_i = self._kd_j = 0
        self._ka_i = self._xb_i = self._ka_j = self._xb_j = 0
        self._output = None
