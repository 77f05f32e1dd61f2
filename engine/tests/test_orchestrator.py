"""Tests for the client-role peer driver."""

from __future__ import annotations

import hashlib
import json

import httpx
import pytest
import structlog

from tecdsa_engine.api.server import create_app
from tecdsa_engine.config import Config
from tecdsa_engine.core.custodian import KeyShareCustodian
from tecdsa_engine.core.errors import MalformedMessage
from tecdsa_engine.core.ledger import ConsumptionLedger
from tecdsa_engine.core.orchestrator import PeerClient, PeerProtocolError
from tecdsa_engine.core.sessions import SessionRegistry
from tecdsa_engine.core.sign import verify_signature
from tecdsa_engine.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from tecdsa_engine.utils.curve import scalar_to_hex

BASE = "http://engine.test"


@pytest.fixture
def server_app():
    ledger = ConsumptionLedger()
    custodian = KeyShareCustodian(key=b"\x03" * 32)
    yield create_app(SessionRegistry(), ledger, custodian)
    ledger.close()
    custodian.close()


def _asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=BASE)


def _mock_peer(handler, breaker: CircuitBreaker | None = None) -> PeerClient:
    peer = PeerClient(BASE, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)), breaker=breaker)
    peer._RETRY_BACKOFF = 0
    return peer


class TestPipeline:
    @pytest.mark.asyncio
    async def test_keygen_triples_presign_sign(self, server_app) -> None:
        async with _asgi_client(server_app) as http:
            peer = PeerClient(BASE, http=http)
            kg = await peer.keygen("alice", "kg-1")
            wallet_id = kg.summary["wallet_id"]

            tr = await peer.triples("alice", "tr-1", triples_count=1)
            (t0, t1), = tr.output.pairs()
            assert tr.output.dropped == []

            ps = await peer.presign("alice", "ps-1", kg.output, wallet_id, (t0, t1), tr.summary["triple_handles"])
            assert ps.summary["big_r"] == ps.output.big_r_hex

            digest = hashlib.sha256(b"transfer 1 unit").digest()
            sig = await peer.sign("alice", "sig-1", ps.output, kg.output.public_key, ps.summary["presign_id"], digest)
            assert sig.summary["r"] == scalar_to_hex(sig.output.signature.r)
            assert sig.summary["s"] == scalar_to_hex(sig.output.signature.s)
            assert verify_signature(kg.output.public_key, digest, sig.output.signature)
            await peer.close()

    @pytest.mark.asyncio
    async def test_server_rejection_surfaces(self, server_app) -> None:
        async with _asgi_client(server_app) as http:
            peer = PeerClient(BASE, http=http)
            await peer.keygen("alice", "kg-1")
            with pytest.raises(PeerProtocolError) as exc:
                await peer.triples("alice", "kg-1")
            assert exc.value.status == 409
            assert exc.value.error == "SessionExists"
            assert exc.value.action == "retry"


class DropFirstReply(httpx.AsyncBaseTransport):
    """Delivers every request but loses the first response for ``path``."""

    def __init__(self, inner: httpx.AsyncBaseTransport, path: str) -> None:
        self._inner = inner
        self._path = path
        self.dropped = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self._inner.handle_async_request(request)
        if request.url.path == self._path and not self.dropped:
            self.dropped += 1
            await response.aread()
            raise httpx.ReadError("connection reset", request=request)
        return response


def _lossy_peer(app, path: str) -> tuple[PeerClient, DropFirstReply]:
    transport = DropFirstReply(httpx.ASGITransport(app=app), path)
    peer = PeerClient(BASE, http=httpx.AsyncClient(transport=transport, base_url=BASE))
    peer._RETRY_BACKOFF = 0
    return peer, transport


class TestLostReplies:
    @pytest.mark.asyncio
    async def test_keygen_survives_lost_first_reply(self, server_app) -> None:
        peer, transport = _lossy_peer(server_app, "/v1/keygen/step1")
        kg = await peer.keygen("alice", "kg-1")
        assert transport.dropped == 1
        assert kg.summary["public_key"] == kg.output.public_key_hex
        await peer.close()

    @pytest.mark.asyncio
    async def test_presign_retry_keeps_triples(self, server_app) -> None:
        peer, transport = _lossy_peer(server_app, "/v1/presign/step1")
        kg = await peer.keygen("alice", "kg-1")
        tr = await peer.triples("alice", "tr-1", triples_count=1)
        (t0, t1), = tr.output.pairs()
        ps = await peer.presign(
            "alice", "ps-1", kg.output, kg.summary["wallet_id"], (t0, t1), tr.summary["triple_handles"]
        )
        assert transport.dropped == 1
        assert ps.summary["big_r"] == ps.output.big_r_hex
        await peer.close()


class TestPeerRequest:
    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={})

        breaker = CircuitBreaker("peer", failure_threshold=1)
        peer = _mock_peer(handler, breaker)
        resp = await peer._peer_request("get", f"{BASE}/health")
        assert resp.status_code == 200
        assert len(calls) == 3
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_record_failure(self) -> None:
        breaker = CircuitBreaker("peer", failure_threshold=5)
        peer = _mock_peer(lambda request: httpx.Response(500), breaker)
        with pytest.raises(httpx.HTTPStatusError):
            await peer._peer_request("get", f"{BASE}/health")
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        peer = _mock_peer(handler)
        with pytest.raises(httpx.ConnectError):
            await peer._peer_request("get", f"{BASE}/health")
        assert len(calls) == PeerClient._PEER_RETRIES + 1

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404, json={"detail": "Session not found or expired"})

        peer = _mock_peer(handler)
        resp = await peer._peer_request("get", f"{BASE}/x")
        assert resp.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_request_id_forwarded(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("x-request-id"))
            return httpx.Response(200, json={})

        peer = _mock_peer(handler)
        structlog.contextvars.bind_contextvars(request_id="trace-42")
        try:
            await peer._peer_request("get", f"{BASE}/health")
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        assert seen == ["trace-42"]

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_requests(self) -> None:
        calls = []
        breaker = CircuitBreaker("peer", failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        peer = _mock_peer(lambda request: calls.append(request) or httpx.Response(200, json={}), breaker)
        with pytest.raises(CircuitOpenError):
            await peer.keygen("alice", "kg-1")
        assert calls == []


class TestPostStep:
    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        peer = _mock_peer(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(PeerProtocolError):
            await peer.keygen("alice", "kg-1")

    @pytest.mark.asyncio
    async def test_error_body_parsed(self) -> None:
        body = {"detail": "Malformed protocol message", "action": "restart-required", "error": "MalformedMessage"}
        peer = _mock_peer(lambda request: httpx.Response(410, json=body))
        with pytest.raises(PeerProtocolError) as exc:
            await peer.keygen("alice", "kg-1")
        assert exc.value.status == 410
        assert exc.value.action == "restart-required"
        assert exc.value.error == "MalformedMessage"

    @pytest.mark.asyncio
    async def test_empty_reply_aborts_server_session(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"msgs_1": {}, "complete": False})

        peer = _mock_peer(handler)
        with pytest.raises(MalformedMessage):
            await peer.keygen("alice", "kg-1")
        assert calls[-1].method == "DELETE"
        assert calls[-1].url.path == "/v1/sessions/alice/kg-1"


class CorruptReply(httpx.AsyncBaseTransport):
    """Replaces the ``msgs_1`` of every response for ``path``."""

    def __init__(self, inner: httpx.AsyncBaseTransport, path: str, msgs_1: dict) -> None:
        self._inner = inner
        self._path = path
        self._msgs_1 = msgs_1

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self._inner.handle_async_request(request)
        if request.url.path != self._path:
            return response
        body = json.loads(await response.aread())
        body["msgs_1"] = self._msgs_1
        return httpx.Response(response.status_code, json=body)


class TestAbort:
    @pytest.mark.asyncio
    async def test_local_failure_aborts_server_session(self, server_app) -> None:
        transport = CorruptReply(httpx.ASGITransport(app=server_app), "/v1/keygen/step1", {"wait_0": {"0": "zz"}})
        async with httpx.AsyncClient(transport=transport, base_url=BASE) as http:
            peer = PeerClient(BASE, http=http)
            with pytest.raises(MalformedMessage):
                await peer.keygen("alice", "kg-1")
            resp = await http.get(f"{BASE}/v1/sessions/alice/kg-1")
            assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_abort_unknown_session(self, server_app) -> None:
        async with _asgi_client(server_app) as http:
            peer = PeerClient(BASE, http=http)
            assert await peer.abort("alice", "never-started") is False

    @pytest.mark.asyncio
    async def test_abort_failure_keeps_original_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"msgs_1": {}, "complete": False})

        peer = _mock_peer(handler)
        with pytest.raises(MalformedMessage):
            await peer.keygen("alice", "kg-1")


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_uses_peer_settings(self) -> None:
        config = Config()
        object.__setattr__(config, "peer_url", "http://peer.test:9000/")
        object.__setattr__(config, "peer_timeout", 5.0)
        peer = PeerClient.from_config(config)
        assert peer.base_url == "http://peer.test:9000"
        assert peer._http.timeout.read == 5.0
        await peer.close()
