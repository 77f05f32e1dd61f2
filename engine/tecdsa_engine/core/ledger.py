"""SQLite ledger of consumed triples and presignatures.

Generated triples and presignatures wait in memory until a Presign or Sign
session claims them. Every claim is recorded in SQLite first, so a handle
presented twice is rejected even across restarts. Nothing is ever refunded:
a session that fails after claiming its inputs needs fresh ones.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from tecdsa_engine.core.errors import (
    PresignAlreadyConsumed,
    PresignUnavailable,
    TripleAlreadyConsumed,
    TripleUnavailable,
)
from tecdsa_engine.core.presign import PresignOutput
from tecdsa_engine.core.triples import GeneratedTriple, TriplePub

log = structlog.get_logger()


@dataclass(frozen=True)
class TripleHandle:
    """Names one generated triple: the batch's session id plus its index."""

    batch_id: str
    index: int

    def __str__(self) -> str:
        return f"{self.batch_id}:{self.index}"

    @classmethod
    def parse(cls, value: str) -> TripleHandle:
        batch_id, sep, index = value.rpartition(":")
        if not sep or not batch_id or not index.isdigit():
            raise ValueError(f"Invalid triple handle: {value!r}")
        return cls(batch_id, int(index))


@dataclass(frozen=True)
class StoredPresign:
    output: PresignOutput
    wallet_id: str
    created_at: float


class ConsumptionLedger:
    """Tracks available and consumed correlated randomness per user.

    Falls back to in-memory SQLite when no db_path is provided (useful for tests).
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()
        self._triples: dict[tuple[str, TripleHandle], GeneratedTriple] = {}
        self._presigns: dict[tuple[str, str], StoredPresign] = {}

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS consumed_triples (
                user_id      TEXT NOT NULL,
                handle       TEXT NOT NULL,
                consumed_by  TEXT NOT NULL,
                consumed_at  REAL NOT NULL,
                PRIMARY KEY (user_id, handle)
            );
            CREATE TABLE IF NOT EXISTS consumed_presigns (
                user_id      TEXT NOT NULL,
                presign_id   TEXT NOT NULL,
                consumed_by  TEXT NOT NULL,
                consumed_at  REAL NOT NULL,
                PRIMARY KEY (user_id, presign_id)
            );
        """)
        self._conn.commit()

    # -- triples -------------------------------------------------------------

    def add_triples(self, user_id: str, batch_id: str, triples: list[GeneratedTriple]) -> list[TripleHandle]:
        handles = []
        with self._lock:
            for triple in triples:
                handle = TripleHandle(batch_id, triple.index)
                self._triples[(user_id, handle)] = triple
                handles.append(handle)
        log.info("triples_stored", user_id=user_id, batch_id=batch_id, count=len(handles))
        return handles

    def available_triples(self, user_id: str) -> list[tuple[TripleHandle, TriplePub]]:
        with self._lock:
            return sorted(
                ((h, t.pub) for (uid, h), t in self._triples.items() if uid == user_id),
                key=lambda item: (item[0].batch_id, item[0].index),
            )

    def consume_triples(self, user_id: str, handles: list[TripleHandle], consumed_by: str) -> list[GeneratedTriple]:
        """Atomically claim every handle or none of them."""
        if len(set(handles)) != len(handles):
            raise TripleAlreadyConsumed("The same triple was named twice")
        with self._lock:
            for handle in handles:
                row = self._conn.execute(
                    "SELECT 1 FROM consumed_triples WHERE user_id = ? AND handle = ?",
                    (user_id, str(handle)),
                ).fetchone()
                if row is not None:
                    log.warning("triple_reuse_rejected", user_id=user_id, handle=str(handle))
                    raise TripleAlreadyConsumed(f"Triple {handle} already consumed")
                if (user_id, handle) not in self._triples:
                    raise TripleUnavailable(f"Triple {handle} not available")
            now = time.time()
            try:
                self._conn.executemany(
                    "INSERT INTO consumed_triples (user_id, handle, consumed_by, consumed_at) VALUES (?, ?, ?, ?)",
                    [(user_id, str(h), consumed_by, now) for h in handles],
                )
                self._conn.commit()
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise TripleAlreadyConsumed("Triple consumed concurrently")
            claimed = [self._triples.pop((user_id, h)) for h in handles]
        log.info("triples_consumed", user_id=user_id, handles=[str(h) for h in handles], consumed_by=consumed_by)
        return claimed

    # -- presignatures -------------------------------------------------------

    def add_presign(self, user_id: str, presign_id: str, output: PresignOutput, wallet_id: str) -> None:
        with self._lock:
            self._presigns[(user_id, presign_id)] = StoredPresign(output, wallet_id, time.time())
        log.info("presign_stored", user_id=user_id, presign_id=presign_id)

    def available_presigns(self, user_id: str) -> list[str]:
        with self._lock:
            return sorted(pid for uid, pid in self._presigns if uid == user_id)

    def consume_presign(self, user_id: str, presign_id: str, consumed_by: str) -> StoredPresign:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM consumed_presigns WHERE user_id = ? AND presign_id = ?",
                (user_id, presign_id),
            ).fetchone()
            if row is not None:
                log.warning("presign_reuse_rejected", user_id=user_id, presign_id=presign_id)
                raise PresignAlreadyConsumed(f"Presignature {presign_id} already consumed")
            stored = self._presigns.get((user_id, presign_id))
            if stored is None:
                raise PresignUnavailable(f"Presignature {presign_id} not available")
            self._conn.execute(
                "INSERT INTO consumed_presigns (user_id, presign_id, consumed_by, consumed_at) VALUES (?, ?, ?, ?)",
                (user_id, presign_id, consumed_by, time.time()),
            )
            self._conn.commit()
            del self._presigns[(user_id, presign_id)]
        log.info("presign_consumed", user_id=user_id, presign_id=presign_id, consumed_by=consumed_by)
        return stored

    def counts(self) -> dict[str, int]:
        with self._lock:
            consumed_triples = self._conn.execute("SELECT COUNT(*) FROM consumed_triples").fetchone()[0]
            consumed_presigns = self._conn.execute("SELECT COUNT(*) FROM consumed_presigns").fetchone()[0]
            return {
                "available_triples": len(self._triples),
                "consumed_triples": consumed_triples,
                "available_presigns": len(self._presigns),
                "consumed_presigns": consumed_presigns,
            }

    def close(self) -> None:
        """Close the database connection."""
        self._triples.clear()
        self._presigns.clear()
        self._conn.close()
