"""FastAPI server exposing the server role of every protocol phase.

Protocol endpoints (the client sends ``msgs_0``, gets ``msgs_1`` back):
- POST /v1/keygen/step{1..5}: Distributed key generation
- POST /v1/triples/step{1..11}: Beaver triple batch
- POST /v1/presign/step{1..3}: Presignature from a wallet and two triples
- POST /v1/sign/step{1..2}: Signature from a presignature and a digest

Session and inventory endpoints:
- GET    /v1/sessions/{user_id}/{session_id}: Session phase, step and expiry
- DELETE /v1/sessions/{user_id}/{session_id}: Abort and erase a session
- GET    /v1/triples/{user_id}: Unconsumed triples and presignatures

Operations:
- GET /health, GET /health/ready, GET /metrics
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response

from tecdsa_engine import __version__
from tecdsa_engine.api.metrics import (
    SIGNATURES_PRODUCED,
    STORED_WALLETS,
    TRIPLES_DROPPED,
    TRIPLES_GENERATED,
    UPTIME_SECONDS,
    metrics_response,
)
from tecdsa_engine.api.middleware import (
    RateLimiter,
    RateLimitMiddleware,
    RequestIdMiddleware,
    get_cors_origins,
)
from tecdsa_engine.api.models import (
    HealthResponse,
    InventoryResponse,
    KeygenStartRequest,
    PresignStartRequest,
    ReadinessResponse,
    SessionDeleteResponse,
    SessionStatusResponse,
    SignStartRequest,
    StepRequest,
    StepResponse,
    TriplePubModel,
    TriplesStartRequest,
)
from tecdsa_engine.core.custodian import KeyShareCustodian
from tecdsa_engine.core.errors import (
    ClientAction,
    ProtocolError,
    SessionExists,
    SessionNotFound,
    WalletNotFound,
    WalletUnsealFailed,
)
from tecdsa_engine.core.keygen import KeygenProtocol
from tecdsa_engine.core.ledger import ConsumptionLedger, TripleHandle
from tecdsa_engine.core.presign import PresignProtocol
from tecdsa_engine.core.rounds import Phase, Role, RoundProtocol, SessionKey
from tecdsa_engine.core.sessions import CompletionHook, ProtocolSession, SessionRegistry
from tecdsa_engine.core.sign import SignProtocol
from tecdsa_engine.core.triples import TriplesProtocol
from tecdsa_engine.utils.curve import point_to_hex, scalar_to_hex

log = structlog.get_logger()

_MAX_BODY = 1_048_576
_MAX_TRIPLES_BODY = 33_554_432  # OT messages grow with the batch size


def error_status(error: ProtocolError) -> int:
    if isinstance(error, (SessionNotFound, WalletNotFound)):
        return 404
    if isinstance(error, WalletUnsealFailed):
        return 500
    if error.action is ClientAction.RETRY:
        return 409
    return 410


def create_app(
    registry: SessionRegistry,
    ledger: ConsumptionLedger,
    custodian: KeyShareCustodian,
    rate_limit_capacity: int = 60,
    rate_limit_rate: int = 10,
    max_triples_count: int = 8,
    cors_origins: str = "",
    production: bool = False,
    purge_interval: float = 30.0,
) -> FastAPI:
    """Create the FastAPI application with injected dependencies."""
    started_at = time.monotonic()
    _shutdown_event = asyncio.Event()

    async def _periodic_purge() -> None:
        """Evict idle sessions even when no requests arrive."""
        while not _shutdown_event.is_set():
            try:
                await asyncio.sleep(purge_interval)
            except asyncio.CancelledError:
                return
            try:
                purged = registry.purge_expired()
                if purged:
                    log.info("sessions_purged", count=purged)
            except Exception:
                log.warning("periodic_purge_error", exc_info=True)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        purge_task = asyncio.create_task(_periodic_purge())
        STORED_WALLETS.set(custodian.count)
        yield
        _shutdown_event.set()
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
        registry.clear()

    app = FastAPI(
        title="tECDSA Engine",
        version=__version__,
        description="Two-party threshold ECDSA protocol engine (server role)",
        lifespan=_lifespan,
    )

    @app.exception_handler(ProtocolError)
    async def _protocol_error(request: Request, exc: ProtocolError) -> JSONResponse:
        key = exc.session
        log.warning(
            "protocol_error_response",
            path=request.url.path,
            error=exc.code,
            action=exc.action.value,
            user_id=key.user_id if key else None,
            session_id=key.session_id if key else None,
        )
        return JSONResponse(
            status_code=error_status(exc),
            content={"detail": exc.public_message, "action": exc.action.value, "error": exc.code},
        )

    # Catch unhandled exceptions, never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(cors_origins, production),
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):  # type: ignore[no-untyped-def]
        max_size = _MAX_TRIPLES_BODY if request.url.path.startswith("/v1/triples/") else _MAX_BODY
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > max_size:
                    return JSONResponse(
                        status_code=413, content={"detail": f"Request body too large (max {max_size} bytes)"}
                    )
            except (ValueError, OverflowError):
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        elif request.method in ("POST", "PUT", "PATCH"):
            if "chunked" in request.headers.get("transfer-encoding", "").lower():
                return JSONResponse(status_code=411, content={"detail": "Content-Length header required"})
        return await call_next(request)

    limiter = RateLimiter(default_capacity=rate_limit_capacity, default_rate=rate_limit_rate)
    limiter.set_path_limit("/v1/keygen/", capacity=20, rate=2)
    limiter.set_path_limit("/v1/triples/", capacity=50, rate=10)  # eleven steps per batch
    limiter.set_path_limit("/v1/presign/", capacity=30, rate=5)
    limiter.set_path_limit("/v1/sign/", capacity=30, rate=5)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)

    # Request ID tracing (outermost, must be added last)
    app.add_middleware(RequestIdMiddleware)

    # -- helpers ---------------------------------------------------------------

    def _start_params(req: StepRequest, phase: Phase) -> dict[str, Any]:
        params = req.model_dump(exclude={"user_id", "session_id", "msgs_0", "confirmation"})
        params["phase"] = phase.value
        return params

    def _replay_start(req: StepRequest, phase: Phase) -> StepResponse | None:
        """Cached step-1 reply for a retried start request, or None for a new session.

        Must run before any ledger consumption so a retry never spends
        material twice.
        """
        key = SessionKey(req.user_id, req.session_id)
        session = registry.find(key)
        if session is None:
            return None
        if session.start_params != _start_params(req, phase) or 1 not in session.outbox:
            raise SessionExists(f"Session {key} already exists", session=key)
        return _step(req, 1)

    def _start(
        req: StepRequest,
        phase: Phase,
        engine_factory: Callable[[SessionKey], RoundProtocol],
        on_complete: CompletionHook,
    ) -> StepResponse:
        replay = _replay_start(req, phase)
        if replay is not None:
            return replay
        key = SessionKey(req.user_id, req.session_id)
        registry.open(key, engine_factory(key), on_complete, start_params=_start_params(req, phase))
        return _step(req, 1)

    def _step(req: StepRequest, step: int) -> StepResponse:
        key = SessionKey(req.user_id, req.session_id)
        result, session = registry.submit(key, step, req.msgs_0, req.confirmation)
        return StepResponse(
            session_id=req.session_id,
            step=result.step,
            msgs_1=result.outbound,
            complete=result.complete,
            confirmation=result.confirmation,
            result=dict(session.summary) if result.complete else None,
        )

    def _check_step(step: int, engine_cls: type[RoundProtocol]) -> None:
        if step < 2 or step > len(engine_cls.EMITS):
            raise HTTPException(status_code=404, detail=f"No step {step} for this phase")

    # -- keygen ----------------------------------------------------------------

    @app.post("/v1/keygen/step1", response_model=StepResponse)
    def keygen_start(req: KeygenStartRequest) -> StepResponse:
        def on_complete(session: ProtocolSession) -> dict[str, Any]:
            output = session.engine.output
            wallet_id = custodian.store(session.key.user_id, output)
            STORED_WALLETS.set(custodian.count)
            return {"wallet_id": wallet_id, "public_key": output.public_key_hex}

        return _start(
            req,
            Phase.KEYGEN,
            lambda key: KeygenProtocol(Role.SERVER, key.context(Phase.KEYGEN), threshold=req.threshold),
            on_complete,
        )

    @app.post("/v1/keygen/step{step:int}", response_model=StepResponse)
    def keygen_step(step: int, req: StepRequest) -> StepResponse:
        _check_step(step, KeygenProtocol)
        return _step(req, step)

    # -- triples ---------------------------------------------------------------

    @app.post("/v1/triples/step1", response_model=StepResponse)
    def triples_start(req: TriplesStartRequest) -> StepResponse:
        if req.triples_count > max_triples_count:
            raise HTTPException(status_code=400, detail=f"triples_count must be <= {max_triples_count}")

        def on_complete(session: ProtocolSession) -> dict[str, Any]:
            output = session.engine.output
            handles = ledger.add_triples(session.key.user_id, session.key.session_id, output.triples)
            TRIPLES_GENERATED.inc(len(output.triples))
            TRIPLES_DROPPED.inc(len(output.dropped))
            return {"triple_handles": [str(h) for h in handles], "dropped": list(output.dropped)}

        return _start(
            req,
            Phase.TRIPLES,
            lambda key: TriplesProtocol(
                Role.SERVER,
                key.context(Phase.TRIPLES),
                triples_count=req.triples_count,
                threshold=req.threshold,
            ),
            on_complete,
        )

    @app.post("/v1/triples/step{step:int}", response_model=StepResponse)
    def triples_step(step: int, req: StepRequest) -> StepResponse:
        _check_step(step, TriplesProtocol)
        return _step(req, step)

    # -- presign ---------------------------------------------------------------

    @app.post("/v1/presign/step1", response_model=StepResponse)
    def presign_start(req: PresignStartRequest) -> StepResponse:
        replay = _replay_start(req, Phase.PRESIGN)
        if replay is not None:
            return replay
        key = SessionKey(req.user_id, req.session_id)
        try:
            handles = [TripleHandle.parse(h) for h in req.triple_handles]
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        keygen_out = custodian.load(req.wallet_id, req.user_id)
        triple0, triple1 = ledger.consume_triples(req.user_id, handles, consumed_by=str(key))

        def on_complete(session: ProtocolSession) -> dict[str, Any]:
            output = session.engine.output
            ledger.add_presign(session.key.user_id, session.key.session_id, output, req.wallet_id)
            return {"presign_id": session.key.session_id, "big_r": output.big_r_hex}

        return _start(
            req,
            Phase.PRESIGN,
            lambda k: PresignProtocol(Role.SERVER, k.context(Phase.PRESIGN), keygen_out, triple0, triple1),
            on_complete,
        )

    @app.post("/v1/presign/step{step:int}", response_model=StepResponse)
    def presign_step(step: int, req: StepRequest) -> StepResponse:
        _check_step(step, PresignProtocol)
        return _step(req, step)

    # -- sign ------------------------------------------------------------------

    @app.post("/v1/sign/step1", response_model=StepResponse)
    def sign_start(req: SignStartRequest) -> StepResponse:
        replay = _replay_start(req, Phase.SIGN)
        if replay is not None:
            return replay
        key = SessionKey(req.user_id, req.session_id)
        stored = ledger.consume_presign(req.user_id, req.presign_id, consumed_by=str(key))
        public_key = custodian.public_key(stored.wallet_id)
        digest = bytes.fromhex(req.digest.removeprefix("0x"))

        def on_complete(session: ProtocolSession) -> dict[str, Any]:
            output = session.engine.output
            SIGNATURES_PRODUCED.labels(high_s=str(output.is_high).lower()).inc()
            sig = output.signature
            return {
                "big_r": point_to_hex(sig.big_r),
                "r": scalar_to_hex(sig.r),
                "s": scalar_to_hex(sig.s),
                "is_high": output.is_high,
                "recovery_id": output.recovery_id,
            }

        return _start(
            req,
            Phase.SIGN,
            lambda k: SignProtocol(Role.SERVER, k.context(Phase.SIGN), stored.output, public_key, digest),
            on_complete,
        )

    @app.post("/v1/sign/step{step:int}", response_model=StepResponse)
    def sign_step(step: int, req: StepRequest) -> StepResponse:
        _check_step(step, SignProtocol)
        return _step(req, step)

    # -- sessions and inventory ------------------------------------------------

    @app.get("/v1/sessions/{user_id}/{session_id}", response_model=SessionStatusResponse)
    def session_status(user_id: str, session_id: str) -> SessionStatusResponse:
        return SessionStatusResponse(**registry.describe(SessionKey(user_id, session_id)))

    @app.delete("/v1/sessions/{user_id}/{session_id}", response_model=SessionDeleteResponse)
    def session_delete(user_id: str, session_id: str) -> SessionDeleteResponse:
        deleted = registry.destroy(SessionKey(user_id, session_id))
        if not deleted:
            raise SessionNotFound(session=SessionKey(user_id, session_id))
        return SessionDeleteResponse(session_id=session_id, deleted=True)

    @app.get("/v1/triples/{user_id}", response_model=InventoryResponse)
    def inventory(user_id: str) -> InventoryResponse:
        triples = [
            TriplePubModel(
                handle=str(handle),
                big_a=point_to_hex(pub.big_a),
                big_b=point_to_hex(pub.big_b),
                big_c=point_to_hex(pub.big_c),
            )
            for handle, pub in ledger.available_triples(user_id)
        ]
        wallets = [{"wallet_id": w, "public_key": pk} for w, pk in custodian.wallets(user_id)]
        return InventoryResponse(
            user_id=user_id,
            triples=triples,
            presigns=ledger.available_presigns(user_id),
            wallets=wallets,
        )

    # -- operations ------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        uptime = time.monotonic() - started_at
        UPTIME_SECONDS.set(uptime)
        return HealthResponse(
            status="ok",
            version=__version__,
            active_sessions=registry.active_session_count,
            wallets=custodian.count,
            uptime_seconds=round(uptime, 1),
        )

    @app.get("/health/ready", response_model=ReadinessResponse)
    async def readiness() -> ReadinessResponse:
        checks: dict[str, bool] = {}
        try:
            ledger.counts()
            checks["ledger"] = True
        except Exception as e:
            log.warning("readiness_check_failed", check="ledger", error=str(e))
            checks["ledger"] = False
        try:
            _ = custodian.count
            checks["custodian"] = True
        except Exception as e:
            log.warning("readiness_check_failed", check="custodian", error=str(e))
            checks["custodian"] = False
        checks["session_capacity"] = registry.active_session_count < registry.max_sessions
        return ReadinessResponse(ready=all(checks.values()), checks=checks)

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=metrics_response(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
