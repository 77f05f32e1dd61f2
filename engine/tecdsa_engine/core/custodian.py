"""Encrypted storage for the server's keygen outputs.

Each KeygenOutput is sealed with AES-GCM under the custodian key and stored
in SQLite under a random wallet id. The wallet id is the only handle the
API hands out; the private share is decrypted just long enough to build a
Presign engine.
"""

from __future__ import annotations

import json
import secrets
import sqlite3
import threading
import time
import uuid
from pathlib import Path

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tecdsa_engine.core.errors import WalletNotFound, WalletUnsealFailed
from tecdsa_engine.core.keygen import KeygenOutput
from tecdsa_engine.utils.curve import ECPoint, point_from_hex, point_to_hex, scalar_from_hex, scalar_to_hex

log = structlog.get_logger()

KEY_BYTES = 32
NONCE_BYTES = 12


class KeyShareCustodian:
    """SQLite-backed, encrypted-at-rest store of KeygenOutputs.

    Falls back to in-memory SQLite when no db_path is provided (useful for tests).
    Without a key a random one is generated, so records do not survive a restart.
    """

    _MAX_CONNECT_RETRIES = 3

    def __init__(self, db_path: str | Path | None = None, key: bytes | None = None) -> None:
        if key is None:
            key = secrets.token_bytes(KEY_BYTES)
            log.warning("custodian_ephemeral_key")
        if len(key) != KEY_BYTES:
            raise ValueError(f"Custodian key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(key)
        self._lock = threading.Lock()
        if db_path is not None:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect_with_retry(str(path))
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    @staticmethod
    def _connect_with_retry(path: str) -> sqlite3.Connection:
        """Connect to SQLite with retry on OperationalError."""
        for attempt in range(KeyShareCustodian._MAX_CONNECT_RETRIES):
            try:
                return sqlite3.connect(path, check_same_thread=False)
            except sqlite3.OperationalError:
                if attempt == KeyShareCustodian._MAX_CONNECT_RETRIES - 1:
                    raise
                delay = 2**attempt
                log.warning("db_connect_retry", attempt=attempt + 1, delay_s=delay, path=path)
                time.sleep(delay)
        raise RuntimeError("unreachable")

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS wallets (
                wallet_id   TEXT PRIMARY KEY,
                user_id     TEXT NOT NULL,
                public_key  TEXT NOT NULL,
                nonce       BLOB NOT NULL,
                sealed      BLOB NOT NULL,
                created_at  REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_wallets_user_id ON wallets(user_id);
        """)
        self._conn.commit()

    def _seal(self, wallet_id: str, output: KeygenOutput) -> tuple[bytes, bytes]:
        plaintext = json.dumps(
            {
                "private_share": scalar_to_hex(output.private_share),
                "public_key": output.public_key_hex,
                "participant": output.participant,
                "threshold": output.threshold,
            }
        ).encode()
        nonce = secrets.token_bytes(NONCE_BYTES)
        return nonce, self._aead.encrypt(nonce, plaintext, wallet_id.encode())

    def store(self, user_id: str, output: KeygenOutput) -> str:
        """Seal ``output`` and return its new wallet id."""
        wallet_id = uuid.uuid4().hex
        nonce, sealed = self._seal(wallet_id, output)
        with self._lock:
            self._conn.execute(
                "INSERT INTO wallets (wallet_id, user_id, public_key, nonce, sealed, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (wallet_id, user_id, output.public_key_hex, nonce, sealed, time.time()),
            )
            self._conn.commit()
        log.info("wallet_stored", wallet_id=wallet_id, user_id=user_id, public_key=output.public_key_hex)
        return wallet_id

    def load(self, wallet_id: str, user_id: str | None = None) -> KeygenOutput:
        with self._lock:
            row = self._conn.execute(
                "SELECT user_id, nonce, sealed FROM wallets WHERE wallet_id = ?",
                (wallet_id,),
            ).fetchone()
        if row is None or (user_id is not None and row[0] != user_id):
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        try:
            plaintext = self._aead.decrypt(row[1], row[2], wallet_id.encode())
        except InvalidTag as e:
            log.error("wallet_decrypt_failed", wallet_id=wallet_id)
            raise WalletUnsealFailed(f"Wallet {wallet_id} failed authentication") from e
        data = json.loads(plaintext)
        return KeygenOutput(
            private_share=scalar_from_hex(data["private_share"]),
            public_key=point_from_hex(data["public_key"]),
            participant=data["participant"],
            threshold=data["threshold"],
        )

    def public_key(self, wallet_id: str) -> ECPoint:
        with self._lock:
            row = self._conn.execute(
                "SELECT public_key FROM wallets WHERE wallet_id = ?",
                (wallet_id,),
            ).fetchone()
        if row is None:
            raise WalletNotFound(f"Wallet {wallet_id} not found")
        return point_from_hex(row[0])

    def wallets(self, user_id: str) -> list[tuple[str, str]]:
        """(wallet_id, public_key_hex) pairs owned by ``user_id``."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT wallet_id, public_key FROM wallets WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def has(self, wallet_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM wallets WHERE wallet_id = ? LIMIT 1",
                (wallet_id,),
            ).fetchone()
        return row is not None

    def delete(self, wallet_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM wallets WHERE wallet_id = ?", (wallet_id,))
            self._conn.commit()
        if cur.rowcount:
            log.info("wallet_deleted", wallet_id=wallet_id)
        return cur.rowcount > 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM wallets").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
