"""Final signature from a presignature and a message digest.

Each party sends s_i = h·λk_i + r·λsigma_i; the sum is k·(h + r·x), which
is the ECDSA s for nonce k^-1 since R = k^-1·G. The combined signature is
normalized to low-s and checked with python-ecdsa before it is returned.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from ecdsa.ecdsa import Public_key, Signature

from tecdsa_engine.core import messages
from tecdsa_engine.core.errors import MalformedMessage, SignatureCombinationInvalid
from tecdsa_engine.core.presign import PresignOutput
from tecdsa_engine.core.rounds import PARTICIPANTS, Phase, Role, RoundProtocol
from tecdsa_engine.utils.crypto import lagrange_coefficient
from tecdsa_engine.utils.curve import (
    G,
    HALF_ORDER,
    ORDER,
    ECPoint,
    digest_to_scalar,
    point_to_hex,
    point_x,
    scalar_to_hex,
)

log = structlog.get_logger()


@dataclass(frozen=True)
class FullSignature:
    big_r: ECPoint
    s: int

    @property
    def r(self) -> int:
        return point_x(self.big_r)

    def to_bytes(self) -> bytes:
        """64-byte r || s, the ``sigdecode_string`` layout."""
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big")

    def to_wire(self) -> dict[str, str]:
        return {"big_r": point_to_hex(self.big_r), "s": scalar_to_hex(self.s)}


@dataclass(frozen=True)
class SignOutput:
    signature: FullSignature
    is_high: bool

    @property
    def recovery_id(self) -> int:
        """Parity of R's y coordinate, flipped when s was negated."""
        parity = self.signature.big_r.to_affine().y() & 1
        return parity ^ int(self.is_high)


def verify_signature(public_key: ECPoint, digest: bytes, signature: FullSignature) -> bool:
    pub = Public_key(G, public_key)
    return pub.verifies(digest_to_scalar(digest), Signature(signature.r, signature.s))


class SignProtocol(RoundProtocol):
    phase = Phase.SIGN
    EMITS = [
        {Role.SERVER: ("wait_0",), Role.CLIENT: ("wait_0",)},
        {Role.SERVER: (), Role.CLIENT: ()},
    ]

    def __init__(
        self,
        role: Role,
        context: bytes,
        presign: PresignOutput,
        public_key: ECPoint,
        digest: bytes,
    ) -> None:
        super().__init__(role, context)
        if len(digest) != 32:
            raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
        self.public_key = public_key
        self.digest = digest
        self._presign = presign
        self._s_i = 0
        self._output: SignOutput | None = None

    def _prepare_0(self) -> None:
        lam = lagrange_coefficient(self.role.participant, PARTICIPANTS)
        h = digest_to_scalar(self.digest)
        r = point_x(self._presign.big_r)
        self._s_i = (h * lam * self._presign.k + r * lam * self._presign.sigma) % ORDER

    def _absorb_0(self, payloads: dict) -> None:
        s_j = messages.scalar(payloads["wait_0"])
        s = (self._s_i + s_j) % ORDER
        is_high = s > HALF_ORDER
        if is_high:
            s = ORDER - s
        signature = FullSignature(big_r=self._presign.big_r, s=s)
        if s == 0 or not verify_signature(self.public_key, self.digest, signature):
            raise SignatureCombinationInvalid("Combined signature does not verify")
        self._output = SignOutput(signature=signature, is_high=is_high)
        log.info("signature_combined", role=self.role.name.lower(), is_high=is_high)

    def _emit_0(self) -> dict:
        return {"wait_0": scalar_to_hex(self._s_i)}

    @property
    def output(self) -> SignOutput:
        if not self.complete or self._output is None:
            raise MalformedMessage("Sign has not completed")
        return self._output

    def _erase(self) -> None:
        self._s_i = 0
        self._output = None
