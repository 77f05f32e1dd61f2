"""Shared test fixtures for the engine test suite."""

from __future__ import annotations

import os

# Tests must not pick up a production network or a persistent store from .env.
os.environ["TECDSA_NETWORK"] = "test"
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")

from typing import Callable

import pytest

from tecdsa_engine.core.dealer import deal_triple, keygen_centralized
from tecdsa_engine.core.keygen import KeygenOutput, KeygenProtocol
from tecdsa_engine.core.rounds import Phase, Role, RoundProtocol, SessionKey
from tecdsa_engine.core.triples import GeneratedTriple, TriplesOutput, TriplesProtocol


def run_pair(server: RoundProtocol, client: RoundProtocol) -> None:
    """Drive both engines to completion, the client opening every step."""
    inbound: dict = {}
    confirmation: str | None = None
    for step in range(1, client.total_steps + 1):
        c = client.run_step(step, inbound, confirmation)
        s = server.run_step(step, c.outbound, c.confirmation)
        inbound, confirmation = s.outbound, s.confirmation


@pytest.fixture
def drive() -> Callable[[RoundProtocol, RoundProtocol], None]:
    return run_pair


@pytest.fixture(scope="session")
def keygen_outputs() -> dict[int, KeygenOutput]:
    """Both parties' outputs from one real keygen run."""
    key = SessionKey("fixture-user", "fixture-keygen")
    server = KeygenProtocol(Role.SERVER, key.context(Phase.KEYGEN))
    client = KeygenProtocol(Role.CLIENT, key.context(Phase.KEYGEN))
    run_pair(server, client)
    return {0: server.output, 1: client.output}


@pytest.fixture(scope="session")
def triples_outputs() -> dict[int, TriplesOutput]:
    """Both parties' outputs from one real triples batch (one pair)."""
    key = SessionKey("fixture-user", "fixture-triples")
    server = TriplesProtocol(Role.SERVER, key.context(Phase.TRIPLES), triples_count=1)
    client = TriplesProtocol(Role.CLIENT, key.context(Phase.TRIPLES), triples_count=1)
    run_pair(server, client)
    return {0: server.output, 1: client.output}


@pytest.fixture
def dealt_keys() -> dict[int, KeygenOutput]:
    return keygen_centralized()


@pytest.fixture
def dealt_triples() -> tuple[dict[int, GeneratedTriple], dict[int, GeneratedTriple]]:
    return deal_triple(0), deal_triple(1)
