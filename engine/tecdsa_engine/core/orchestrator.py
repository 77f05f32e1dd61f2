"""Client-role driver for a remote engine.

Runs the client half of each phase locally and exchanges envelopes with a
server engine over HTTP. Every step is a POST of ``msgs_0`` (plus the
client's confirmation, if any); the ``msgs_1`` and confirmation in the reply
feed the next client step. A retried POST is safe because the server
replays the response of a step it already ran.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from tecdsa_engine.config import Config
from tecdsa_engine.core.errors import ProtocolError
from tecdsa_engine.core.keygen import KeygenOutput, KeygenProtocol
from tecdsa_engine.core.presign import PresignOutput, PresignProtocol
from tecdsa_engine.core.rounds import Envelope, Phase, Role, RoundProtocol, SessionKey
from tecdsa_engine.core.sign import SignOutput, SignProtocol
from tecdsa_engine.core.triples import GeneratedTriple, TriplesOutput, TriplesProtocol
from tecdsa_engine.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from tecdsa_engine.utils.curve import ECPoint

log = structlog.get_logger()


class PeerProtocolError(Exception):
    """The server engine rejected a step."""

    def __init__(self, status: int, detail: str, action: str | None = None, error: str | None = None) -> None:
        super().__init__(f"Peer returned {status}: {detail}")
        self.status = status
        self.detail = detail
        self.action = action
        self.error = error


@dataclass
class PeerRun:
    """Local output of a finished phase plus the server's completion summary."""

    output: Any
    summary: dict[str, Any] = field(default_factory=dict)


class PeerClient:
    _PEER_RETRIES = 2
    _RETRY_BACKOFF = 0.3  # seconds, doubles each attempt

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_http = http is None
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=50)
        self._http = http or httpx.AsyncClient(timeout=timeout, limits=limits)
        self._breaker = breaker or CircuitBreaker(name="peer_engine", failure_threshold=3, recovery_timeout=20.0)

    @classmethod
    def from_config(cls, config: Config) -> PeerClient:
        """Client for the engine at ``PEER_URL`` with the ``PEER_TIMEOUT`` budget."""
        return cls(config.peer_url, timeout=config.peer_timeout)

    async def close(self) -> None:
        """Release the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    async def _peer_request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """HTTP request with circuit breaker, retry, and exponential backoff.

        Retries on transport errors and 5xx server errors.
        Propagates request_id for distributed tracing.
        """
        self._breaker.check()

        headers = kwargs.pop("headers", {})
        ctx = structlog.contextvars.get_contextvars()
        if "request_id" in ctx:
            headers["X-Request-ID"] = ctx["request_id"]
        kwargs["headers"] = headers

        last_exc: Exception | None = None
        for attempt in range(self._PEER_RETRIES + 1):
            try:
                resp = await getattr(self._http, method)(url, **kwargs)
                if resp.status_code < 500:
                    self._breaker.record_success()
                    return resp
                last_exc = httpx.HTTPStatusError(
                    f"Server error {resp.status_code}",
                    request=resp.request,
                    response=resp,
                )
            except httpx.HTTPError as e:
                last_exc = e
            if attempt < self._PEER_RETRIES:
                log.info("peer_request_retry", url=url, attempt=attempt + 1, error=str(last_exc))
                await asyncio.sleep(self._RETRY_BACKOFF * (2**attempt))
        self._breaker.record_failure()
        raise last_exc  # type: ignore[misc]

    async def _post_step(self, phase: Phase, step: int, body: dict[str, Any]) -> dict[str, Any]:
        resp = await self._peer_request("post", f"{self.base_url}/v1/{phase.value}/step{step}", json=body)
        try:
            data = resp.json()
        except ValueError:
            raise PeerProtocolError(resp.status_code, "Peer returned a non-JSON body")
        if resp.status_code != 200:
            raise PeerProtocolError(
                resp.status_code,
                str(data.get("detail", "")),
                action=data.get("action"),
                error=data.get("error"),
            )
        return data

    async def abort(self, user_id: str, session_id: str) -> bool:
        """Abort the server's session. Returns False if the server no longer has it."""
        resp = await self._peer_request("delete", f"{self.base_url}/v1/sessions/{user_id}/{session_id}")
        return resp.status_code == 200

    async def _abort_quietly(self, key: SessionKey) -> None:
        try:
            deleted = await self.abort(key.user_id, key.session_id)
        except (CircuitOpenError, httpx.HTTPError) as e:
            log.warning("peer_abort_failed", user_id=key.user_id, session_id=key.session_id, error=str(e))
            return
        log.info("peer_session_aborted", user_id=key.user_id, session_id=key.session_id, deleted=deleted)

    async def _drive(
        self,
        key: SessionKey,
        engine: RoundProtocol,
        start_fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Run ``engine`` to completion against the server. Returns the server summary."""
        inbound: Envelope = {}
        confirmation: str | None = None
        summary: dict[str, Any] = {}
        try:
            for step in range(1, engine.total_steps + 1):
                result = engine.run_step(step, inbound, confirmation)
                body: dict[str, Any] = {
                    "user_id": key.user_id,
                    "session_id": key.session_id,
                    "msgs_0": result.outbound,
                    "confirmation": result.confirmation,
                }
                if step == 1:
                    body.update(start_fields)
                reply = await self._post_step(engine.phase, step, body)
                inbound = reply.get("msgs_1") or {}
                confirmation = reply.get("confirmation")
                if reply.get("complete"):
                    summary = reply.get("result") or {}
        except (PeerProtocolError, CircuitOpenError, httpx.HTTPError):
            engine.erase()
            raise
        except ProtocolError as e:
            # the server half is still active
            engine.erase()
            log.warning("local_protocol_failure", phase=engine.phase.value, session_id=key.session_id, error=e.code)
            await self._abort_quietly(key)
            raise
        if not engine.complete or not summary:
            engine.erase()
            raise PeerProtocolError(502, f"Peer did not complete {engine.phase.value}")
        log.info(
            "peer_phase_complete",
            phase=engine.phase.value,
            user_id=key.user_id,
            session_id=key.session_id,
        )
        return summary

    # -- phases ----------------------------------------------------------------

    async def keygen(self, user_id: str, session_id: str, threshold: int = 2) -> PeerRun:
        key = SessionKey(user_id, session_id)
        engine = KeygenProtocol(Role.CLIENT, key.context(Phase.KEYGEN), threshold=threshold)
        summary = await self._drive(key, engine, {"threshold": threshold})
        output: KeygenOutput = engine.output
        if summary.get("public_key") != output.public_key_hex:
            raise PeerProtocolError(502, "Peer reported a different public key")
        return PeerRun(output, summary)

    async def triples(self, user_id: str, session_id: str, triples_count: int = 1, threshold: int = 2) -> PeerRun:
        """Generate ``triples_count`` pairs. The output keeps only triples both sides kept."""
        key = SessionKey(user_id, session_id)
        engine = TriplesProtocol(
            Role.CLIENT,
            key.context(Phase.TRIPLES),
            triples_count=triples_count,
            threshold=threshold,
        )
        summary = await self._drive(key, engine, {"triples_count": triples_count, "threshold": threshold})
        local: TriplesOutput = engine.output
        server_indexes = {int(h.rpartition(":")[2]) for h in summary.get("triple_handles", [])}
        kept = [t for t in local.triples if t.index in server_indexes]
        dropped = sorted({t.index for t in local.triples} - server_indexes | set(local.dropped))
        return PeerRun(TriplesOutput(triples=kept, dropped=dropped), summary)

    async def presign(
        self,
        user_id: str,
        session_id: str,
        keygen_out: KeygenOutput,
        wallet_id: str,
        triples: tuple[GeneratedTriple, GeneratedTriple],
        triple_handles: list[str],
    ) -> PeerRun:
        key = SessionKey(user_id, session_id)
        engine = PresignProtocol(Role.CLIENT, key.context(Phase.PRESIGN), keygen_out, triples[0], triples[1])
        summary = await self._drive(key, engine, {"wallet_id": wallet_id, "triple_handles": list(triple_handles)})
        output: PresignOutput = engine.output
        return PeerRun(output, summary)

    async def sign(
        self,
        user_id: str,
        session_id: str,
        presign: PresignOutput,
        public_key: ECPoint,
        presign_id: str,
        digest: bytes,
    ) -> PeerRun:
        key = SessionKey(user_id, session_id)
        engine = SignProtocol(Role.CLIENT, key.context(Phase.SIGN), presign, public_key, digest)
        summary = await self._drive(key, engine, {"presign_id": presign_id, "digest": digest.hex()})
        output: SignOutput = engine.output
        return PeerRun(output, summary)
