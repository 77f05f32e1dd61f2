"""Entry point for the threshold ECDSA engine.

Serves the server role of every protocol phase over HTTP.
"""

from __future__ import annotations

import asyncio
import os
import signal

import structlog
import uvicorn

from tecdsa_engine import __version__
from tecdsa_engine.logging import configure_logging

configure_logging()

from tecdsa_engine.api.server import create_app
from tecdsa_engine.config import Config
from tecdsa_engine.core.custodian import KeyShareCustodian
from tecdsa_engine.core.ledger import ConsumptionLedger
from tecdsa_engine.core.sessions import SessionRegistry

log = structlog.get_logger()


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        timeout_graceful_shutdown=10,
        timeout_keep_alive=65,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main() -> None:
    """Start the engine API and wait for a shutdown signal."""
    config = Config()
    warnings = config.validate()
    for w in warnings:
        log.warning("config_warning", msg=w)

    ledger = ConsumptionLedger(db_path=config.ledger_db_path or None)
    custodian = KeyShareCustodian(db_path=config.custodian_db_path or None, key=config.custodian_key_bytes)
    registry = SessionRegistry(
        ttl_seconds=config.session_ttl_seconds,
        max_pending=config.max_pending_payloads,
        max_sessions=config.max_sessions,
    )

    app = create_app(
        registry=registry,
        ledger=ledger,
        custodian=custodian,
        rate_limit_capacity=config.rate_limit_capacity,
        rate_limit_rate=config.rate_limit_rate,
        max_triples_count=config.max_triples_count,
        cors_origins=config.cors_origins,
        production=config.is_production,
    )

    log.info(
        "engine_starting",
        version=__version__,
        host=config.api_host,
        port=config.api_port,
        network=config.network,
        session_ttl_seconds=config.session_ttl_seconds,
        wallets_held=custodian.count,
        log_format=os.getenv("LOG_FORMAT", "console"),
    )

    server_task = asyncio.create_task(run_server(app, config.api_host, config.api_port))
    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    # a server that exits on its own (e.g. port in use) also ends the process
    waiter = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({server_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    log.info("shutting_down")
    for t in (server_task, waiter):
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(server_task, waiter, return_exceptions=True),
            timeout=15.0,
        )
    except TimeoutError:
        log.warning("shutdown_timeout", msg="Tasks did not finish within 15s")
    registry.clear()
    try:
        ledger.close()
    except Exception as e:
        log.warning("ledger_close_error", error=str(e))
    try:
        custodian.close()
    except Exception as e:
        log.warning("custodian_close_error", error=str(e))
    log.info("shutdown_complete")


def main() -> None:
    """Start the threshold ECDSA engine."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
