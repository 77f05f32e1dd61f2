"""Protocol error taxonomy.

Every error knows whether it is fatal for its session and which coarse
action a client should take. The REST layer only ever exposes ``action``
and a short public message, never proof or commitment details.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tecdsa_engine.core.rounds import SessionKey


class ClientAction(Enum):
    RETRY = "retry"
    RESTART_REQUIRED = "restart-required"


class ProtocolError(Exception):
    """Base class for all protocol failures."""

    fatal: bool = True
    action: ClientAction = ClientAction.RESTART_REQUIRED
    public_message: str = "Protocol failure"

    def __init__(self, message: str = "", *, session: SessionKey | None = None) -> None:
        super().__init__(message or self.public_message)
        self.session = session

    @property
    def code(self) -> str:
        return type(self).__name__


class SessionNotFound(ProtocolError):
    fatal = False
    public_message = "Session not found or expired"


class SessionExists(ProtocolError):
    fatal = False
    action = ClientAction.RETRY
    public_message = "Session already exists"


class RoundOutOfOrder(ProtocolError):
    """A payload arrived before the step it depends on.

    Queued payloads are not fatal; the client retries after delivering the
    missing step. Once the queue bound is exceeded the session is dropped.
    """

    fatal = False
    action = ClientAction.RETRY
    public_message = "Round out of order"

    def __init__(
        self,
        message: str = "",
        *,
        session: SessionKey | None = None,
        expected: int | None = None,
        received: int | None = None,
        queued: bool = True,
    ) -> None:
        super().__init__(message, session=session)
        self.expected = expected
        self.received = received
        self.queued = queued
        if not queued:
            self.fatal = True
            self.action = ClientAction.RESTART_REQUIRED


class MalformedMessage(ProtocolError):
    public_message = "Malformed protocol message"


class CommitmentVerificationFailed(ProtocolError):
    public_message = "Peer commitment could not be verified"


class ProofVerificationFailed(ProtocolError):
    public_message = "Peer proof could not be verified"


class PublicKeyMismatch(ProtocolError):
    public_message = "Public key mismatch"


class PresignMismatch(ProtocolError):
    public_message = "Presignature mismatch"


class SignatureCombinationInvalid(ProtocolError):
    public_message = "Combined signature is invalid"


class OTDesync(ProtocolError):
    """Oblivious transfer state diverged; the whole triple batch is unusable."""

    public_message = "Oblivious transfer desynchronized"


class TripleAlreadyConsumed(ProtocolError):
    fatal = False
    public_message = "Triple already consumed"


class TripleUnavailable(ProtocolError):
    fatal = False
    public_message = "Triple not available"


class PresignAlreadyConsumed(ProtocolError):
    fatal = False
    public_message = "Presignature already consumed"


class PresignUnavailable(ProtocolError):
    fatal = False
    public_message = "Presignature not available"


class WalletNotFound(ProtocolError):
    fatal = False
    public_message = "Wallet not found"


class WalletUnsealFailed(ProtocolError):
    """A stored wallet failed authentication under the custodian key."""

    fatal = False
    public_message = "Wallet could not be unsealed"


class SessionLimitReached(ProtocolError):
    fatal = False
    action = ClientAction.RETRY
    public_message = "Too many active sessions"
