"""Step machinery shared by the keygen, triples, presign and sign engines.

Every phase is a fixed list of steps run by both roles. The client opens
each step: it sends its step-N payloads to the server, which consumes them,
runs its own step N, and answers. So a server step N consumes the client's
step-N payloads, and a client step N consumes the server's step-(N-1)
payloads.

An engine describes each step with up to three hooks, looked up by name:

- ``_prepare_<p>()``: compute this party's stage-p data (must not need the
  peer's stage-p payload)
- ``_absorb_<p>(payloads)``: verify and store the peer's stage-p payload
- ``_emit_<p>()``: return this party's stage-p payloads keyed by field

Payloads travel in an envelope ``{field: {sender_participant: payload}}``
matching the ``msgs_0`` / ``msgs_1`` wire layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

import structlog

from tecdsa_engine.core.errors import MalformedMessage, ProtocolError, RoundOutOfOrder

log = structlog.get_logger()

Envelope = dict[str, dict[str, Any]]


class Role(Enum):
    """Named protocol roles. The value is the participant id on the wire."""

    SERVER = 0
    CLIENT = 1

    @property
    def peer(self) -> Role:
        return Role.CLIENT if self is Role.SERVER else Role.SERVER

    @property
    def participant(self) -> int:
        return self.value

    @property
    def mailbox(self) -> str:
        """Name of the envelope addressed to this role."""
        return f"msgs_{self.value}"


PARTICIPANTS: list[int] = [Role.SERVER.participant, Role.CLIENT.participant]


class Phase(Enum):
    KEYGEN = "keygen"
    TRIPLES = "triples"
    PRESIGN = "presign"
    SIGN = "sign"


@dataclass(frozen=True)
class SessionKey:
    """Registry key for one protocol run."""

    user_id: str
    session_id: str

    def __str__(self) -> str:
        return f"{self.user_id}/{self.session_id}"

    def context(self, phase: Phase) -> bytes:
        """Transcript binding shared by both parties of this session."""
        return f"{phase.value}:{self.user_id}:{self.session_id}".encode()


@dataclass(frozen=True)
class StepResult:
    step: int
    outbound: Envelope = field(default_factory=dict)
    confirmation: str | None = None
    complete: bool = False


class RoundProtocol:
    """Base class for a two-party phase engine."""

    phase: ClassVar[Phase]
    # EMITS[p][role] = envelope fields the role sends at stage p
    EMITS: ClassVar[list[dict[Role, tuple[str, ...]]]]

    def __init__(self, role: Role, context: bytes = b"") -> None:
        self.role = role
        self.context = context
        self.step = 0
        self.erased = False
        self._peer_confirmation: str | None = None
        self._confirmation_out: str | None = None

    @property
    def total_steps(self) -> int:
        return len(self.EMITS)

    @property
    def complete(self) -> bool:
        return self.step == self.total_steps

    def inbound_fields(self, step: int) -> tuple[str, ...]:
        """Envelope fields this role needs from the peer to run ``step``."""
        stage = self._absorb_stage(step)
        if stage < 0:
            return ()
        return self.EMITS[stage][self.role.peer]

    def _absorb_stage(self, step: int) -> int:
        return step - 1 if self.role is Role.SERVER else step - 2

    def run_step(
        self,
        step: int,
        inbound: Envelope | None = None,
        confirmation: str | None = None,
    ) -> StepResult:
        if self.erased:
            raise MalformedMessage("Session state has been erased")
        if step != self.step + 1:
            raise RoundOutOfOrder(
                f"{self.phase.value} expected step {self.step + 1}, got {step}",
                expected=self.step + 1,
                received=step,
            )
        if step > self.total_steps:
            raise RoundOutOfOrder(
                f"{self.phase.value} has only {self.total_steps} steps",
                expected=self.step + 1,
                received=step,
            )

        self._peer_confirmation = confirmation
        self._confirmation_out = None
        absorb_stage = self._absorb_stage(step)
        emit_stage = step - 1

        try:
            payloads = self._open(step, inbound or {})
            if self.role is Role.CLIENT:
                if absorb_stage >= 0:
                    self._hook("absorb", absorb_stage, payloads)
                self._hook("prepare", emit_stage)
            else:
                self._hook("prepare", emit_stage)
                self._hook("absorb", absorb_stage, payloads)
            emitted = self._hook("emit", emit_stage) or {}
        except ProtocolError as e:
            if e.fatal:
                self.erase()
            raise

        expected = self.EMITS[emit_stage][self.role]
        if set(emitted) != set(expected):
            raise RuntimeError(
                f"{self.phase.value} step {step} emitted {sorted(emitted)}, expected {sorted(expected)}"
            )
        self.step = step
        sender = str(self.role.participant)
        outbound = {name: {sender: value} for name, value in emitted.items()}
        log.debug(
            "protocol_step_done",
            phase=self.phase.value,
            role=self.role.name.lower(),
            step=step,
            fields=sorted(outbound),
        )
        return StepResult(
            step=step,
            outbound=outbound,
            confirmation=self._confirmation_out,
            complete=self.complete,
        )

    def _hook(self, kind: str, stage: int, *args: Any) -> Any:
        fn = getattr(self, f"_{kind}_{stage}", None)
        if fn is None:
            return None
        return fn(*args)

    def _open(self, step: int, inbound: Envelope) -> dict[str, Any]:
        """Check the envelope carries exactly the peer payloads ``step`` needs."""
        if not isinstance(inbound, dict):
            raise MalformedMessage("Envelope must be an object")
        required = self.inbound_fields(step)
        unexpected = set(inbound) - set(required)
        if unexpected:
            raise MalformedMessage(f"Unexpected fields for step {step}: {sorted(unexpected)}")
        sender = str(self.role.peer.participant)
        payloads: dict[str, Any] = {}
        for name in required:
            by_sender = inbound.get(name)
            if not isinstance(by_sender, dict) or set(by_sender) != {sender}:
                raise MalformedMessage(f"Field {name} must carry exactly one payload from participant {sender}")
            payloads[name] = by_sender[sender]
        return payloads

    def require_confirmation(self) -> str:
        if not isinstance(self._peer_confirmation, str) or not self._peer_confirmation:
            raise MalformedMessage("Missing peer confirmation")
        return self._peer_confirmation

    def erase(self) -> None:
        """Overwrite secret material. The engine is unusable afterwards."""
        self._erase()
        self.erased = True

    def _erase(self) -> None:
        pass

    @property
    def output(self) -> Any:
        raise NotImplementedError
