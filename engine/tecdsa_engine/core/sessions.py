"""Session registry: maps (user_id, session_id) to a running protocol engine.

The registry enforces step order, parks payloads that arrive early, replays
outbound envelopes for steps that were already processed, and evicts idle
sessions. Each session has its own lock, so steps of one session run one at
a time while distinct sessions proceed in parallel.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog

from tecdsa_engine.core.errors import (
    ProtocolError,
    RoundOutOfOrder,
    SessionExists,
    SessionLimitReached,
    SessionNotFound,
)
from tecdsa_engine.core.rounds import Envelope, RoundProtocol, SessionKey, StepResult

log = structlog.get_logger()

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_PENDING = 4
DEFAULT_MAX_SESSIONS = 1000


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"
    EXPIRED = "expired"


# Called once, under the session lock, when the engine finishes. The returned
# dict is merged into every later response for the session.
CompletionHook = Callable[["ProtocolSession"], "dict[str, Any] | None"]


@dataclass
class ProtocolSession:
    key: SessionKey
    engine: RoundProtocol
    on_complete: CompletionHook | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    pending: dict[int, tuple[Envelope, str | None]] = field(default_factory=dict)
    outbox: dict[int, StepResult] = field(default_factory=dict)
    summary: dict[str, Any] = field(default_factory=dict)
    start_params: dict[str, Any] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def phase(self) -> str:
        return self.engine.phase.value

    @property
    def step(self) -> int:
        return self.engine.step

    def describe(self, ttl: float, now: float) -> dict[str, Any]:
        return {
            "user_id": self.key.user_id,
            "session_id": self.key.session_id,
            "phase": self.phase,
            "role": self.engine.role.name.lower(),
            "status": self.status.value,
            "step": self.step,
            "total_steps": self.engine.total_steps,
            "pending_steps": sorted(self.pending),
            "expires_in": max(0.0, ttl - (now - self.last_activity)),
        }


class SessionRegistry:
    """Thread-safe registry of in-flight protocol sessions."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_pending = max_pending
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: dict[SessionKey, ProtocolSession] = {}
        self._lock = threading.Lock()

    def __contains__(self, key: SessionKey) -> bool:
        with self._lock:
            return key in self._sessions

    @property
    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _expired(self, session: ProtocolSession, now: float) -> bool:
        return now - session.last_activity > self.ttl_seconds

    def open(
        self,
        key: SessionKey,
        engine: RoundProtocol,
        on_complete: CompletionHook | None = None,
        start_params: dict[str, Any] | None = None,
    ) -> ProtocolSession:
        """Register a new session.

        ``start_params`` records the phase parameters of step 1 so a retried
        step-1 request can be told apart from a conflicting one.
        """
        from tecdsa_engine.api.metrics import ACTIVE_SESSIONS, SESSIONS_STARTED

        self.purge_expired()
        now = self._clock()
        session = ProtocolSession(
            key,
            engine,
            on_complete,
            created_at=now,
            last_activity=now,
            start_params=dict(start_params or {}),
        )
        with self._lock:
            if key in self._sessions:
                raise SessionExists(f"Session {key} already exists", session=key)
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitReached(session=key)
            self._sessions[key] = session
            ACTIVE_SESSIONS.set(len(self._sessions))
        SESSIONS_STARTED.labels(phase=session.phase).inc()
        log.info(
            "session_opened",
            user_id=key.user_id,
            session_id=key.session_id,
            phase=session.phase,
            role=engine.role.name.lower(),
        )
        return session

    def get(self, key: SessionKey) -> ProtocolSession:
        self.purge_expired()
        with self._lock:
            session = self._sessions.get(key)
        if session is None:
            raise SessionNotFound(f"Session {key} not found", session=key)
        return session

    def find(self, key: SessionKey) -> ProtocolSession | None:
        self.purge_expired()
        with self._lock:
            return self._sessions.get(key)

    def describe(self, key: SessionKey) -> dict[str, Any]:
        session = self.get(key)
        return session.describe(self.ttl_seconds, self._clock())

    def submit(
        self,
        key: SessionKey,
        step: int,
        inbound: Envelope | None = None,
        confirmation: str | None = None,
    ) -> tuple[StepResult, ProtocolSession]:
        """Run ``step`` for the session, or replay / queue it.

        Returns the step result together with the session, whose ``summary``
        carries whatever the completion hook recorded.
        """
        session = self.get(key)
        with session.lock:
            if session.status is not SessionStatus.ACTIVE and step not in session.outbox:
                raise SessionNotFound(f"Session {key} is {session.status.value}", session=key)
            session.last_activity = self._clock()

            cached = session.outbox.get(step)
            if cached is not None:
                log.info("step_replayed", user_id=key.user_id, session_id=key.session_id, step=step)
                return cached, session

            expected = session.engine.step + 1
            if step > expected:
                self._queue(session, step, inbound or {}, confirmation, expected)
            if step < expected:
                # an older step whose response is no longer cached
                self._fail(session, RoundOutOfOrder(
                    f"Step {step} already processed",
                    session=key,
                    expected=expected,
                    received=step,
                    queued=False,
                ))

            result = self._run(session, step, inbound, confirmation)
            self._drain(session)
            return result, session

    def _queue(
        self,
        session: ProtocolSession,
        step: int,
        inbound: Envelope,
        confirmation: str | None,
        expected: int,
    ) -> None:
        key = session.key
        if step > session.engine.total_steps or (
            step not in session.pending and len(session.pending) >= self.max_pending
        ):
            self._fail(session, RoundOutOfOrder(
                f"Cannot queue step {step}, expected {expected}",
                session=key,
                expected=expected,
                received=step,
                queued=False,
            ))
        session.pending[step] = (inbound, confirmation)
        log.info(
            "step_queued",
            user_id=key.user_id,
            session_id=key.session_id,
            phase=session.phase,
            step=step,
            expected=expected,
            pending=len(session.pending),
        )
        raise RoundOutOfOrder(
            f"Step {step} queued until step {expected} arrives",
            session=key,
            expected=expected,
            received=step,
            queued=True,
        )

    def _drain(self, session: ProtocolSession) -> None:
        while session.status is SessionStatus.ACTIVE:
            nxt = session.engine.step + 1
            queued = session.pending.pop(nxt, None)
            if queued is None:
                return
            log.info("step_drained", session_id=session.key.session_id, phase=session.phase, step=nxt)
            self._run(session, nxt, *queued)

    def _run(
        self,
        session: ProtocolSession,
        step: int,
        inbound: Envelope | None,
        confirmation: str | None,
    ) -> StepResult:
        from tecdsa_engine.api.metrics import PROTOCOL_ERRORS, SESSIONS_COMPLETED, STEP_LATENCY

        start = time.perf_counter()
        try:
            result = session.engine.run_step(step, inbound, confirmation)
        except ProtocolError as e:
            e.session = session.key
            PROTOCOL_ERRORS.labels(error=e.code).inc()
            if e.fatal:
                self._fail(session, e)
            raise
        STEP_LATENCY.labels(phase=session.phase).observe(time.perf_counter() - start)
        session.outbox[step] = result

        if result.complete:
            if session.on_complete is not None:
                session.summary.update(session.on_complete(session) or {})
            session.status = SessionStatus.COMPLETE
            session.engine.erase()
            session.pending.clear()
            SESSIONS_COMPLETED.labels(phase=session.phase).inc()
            log.info(
                "session_completed",
                user_id=session.key.user_id,
                session_id=session.key.session_id,
                phase=session.phase,
            )
        return result

    def _fail(self, session: ProtocolSession, error: ProtocolError) -> None:
        """Drop a session after a fatal error, then raise the error."""
        from tecdsa_engine.api.metrics import SESSIONS_FAILED

        session.status = SessionStatus.FAILED
        session.engine.erase()
        session.pending.clear()
        self._remove(session.key, session)
        SESSIONS_FAILED.labels(phase=session.phase, reason=error.code).inc()
        log.warning(
            "protocol_failure",
            user_id=session.key.user_id,
            session_id=session.key.session_id,
            phase=session.phase,
            step=session.engine.step,
            error=error.code,
            detail=str(error),
        )
        raise error

    def _remove(self, key: SessionKey, session: ProtocolSession) -> None:
        from tecdsa_engine.api.metrics import ACTIVE_SESSIONS

        with self._lock:
            if self._sessions.get(key) is session:
                del self._sessions[key]
            ACTIVE_SESSIONS.set(len(self._sessions))

    def destroy(self, key: SessionKey) -> bool:
        """Abort a session and erase its secrets. Returns False if unknown."""
        from tecdsa_engine.api.metrics import SESSIONS_FAILED

        with self._lock:
            session = self._sessions.get(key)
        if session is None:
            return False
        with session.lock:
            if session.status is SessionStatus.ACTIVE:
                session.status = SessionStatus.FAILED
                SESSIONS_FAILED.labels(phase=session.phase, reason="aborted").inc()
            session.engine.erase()
            session.pending.clear()
            self._remove(key, session)
        log.info("session_destroyed", user_id=key.user_id, session_id=key.session_id, phase=session.phase)
        return True

    def purge_expired(self) -> int:
        """Evict sessions idle longer than the TTL. Returns the number purged."""
        from tecdsa_engine.api.metrics import ACTIVE_SESSIONS, SESSIONS_FAILED

        now = self._clock()
        with self._lock:
            expired = [s for s in self._sessions.values() if self._expired(s, now)]
        purged = 0
        for session in expired:
            # a session mid-step is not idle
            if not session.lock.acquire(blocking=False):
                continue
            try:
                if not self._expired(session, self._clock()):
                    continue
                was_active = session.status is SessionStatus.ACTIVE
                session.status = SessionStatus.EXPIRED
                session.engine.erase()
                session.pending.clear()
                with self._lock:
                    if self._sessions.get(session.key) is session:
                        del self._sessions[session.key]
                        purged += 1
                if was_active:
                    SESSIONS_FAILED.labels(phase=session.phase, reason="expired").inc()
                    log.info(
                        "session_expired",
                        user_id=session.key.user_id,
                        session_id=session.key.session_id,
                        phase=session.phase,
                        step=session.step,
                    )
            finally:
                session.lock.release()
        if purged:
            with self._lock:
                ACTIVE_SESSIONS.set(len(self._sessions))
        return purged

    def clear(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.engine.erase()
