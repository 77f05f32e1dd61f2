"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _float_env(key: str, default: str) -> float:
    val = os.getenv(key, default)
    try:
        return float(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid float for {key}: {val!r}")


@dataclass(frozen=True)
class Config:
    # API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "8431")
    network: str = os.getenv("TECDSA_NETWORK", "dev")
    cors_origins: str = os.getenv("CORS_ORIGINS", "")

    # Sessions
    session_ttl_seconds: float = _float_env("SESSION_TTL_SECONDS", "300")
    max_pending_payloads: int = _int_env("MAX_PENDING_PAYLOADS", "4")
    max_sessions: int = _int_env("MAX_SESSIONS", "1000")

    # Protocol parameters
    max_triples_count: int = _int_env("MAX_TRIPLES_COUNT", "8")

    # Storage (empty path = in-memory SQLite)
    ledger_db_path: str = os.getenv("LEDGER_DB_PATH", "")
    custodian_db_path: str = os.getenv("CUSTODIAN_DB_PATH", "")
    custodian_key: str = os.getenv("CUSTODIAN_KEY", "")

    # Rate limits (configurable without redeploy)
    rate_limit_capacity: int = _int_env("RATE_LIMIT_CAPACITY", "60")
    rate_limit_rate: int = _int_env("RATE_LIMIT_RATE", "10")

    # Peer engine, used when this process drives the client role
    peer_url: str = os.getenv("PEER_URL", "http://localhost:8431")
    peer_timeout: float = _float_env("PEER_TIMEOUT", "30.0")

    @property
    def is_production(self) -> bool:
        return self.network == "production"

    @property
    def custodian_key_bytes(self) -> bytes | None:
        if not self.custodian_key:
            return None
        return bytes.fromhex(self.custodian_key.removeprefix("0x"))

    def validate(self, *, strict: bool | None = None) -> list[str]:
        """Validate config at startup. Returns list of warnings (empty = all good).

        Args:
            strict: If True, raise ValueError on any warning. Defaults to True
                    when TECDSA_NETWORK is production.
        """
        if strict is None:
            strict = self.is_production

        warnings = []
        if self.api_port < 1 or self.api_port > 65535:
            raise ValueError(f"API_PORT must be 1-65535, got {self.api_port}")
        known_networks = ("dev", "test", "production")
        if self.network not in known_networks:
            warnings.append(f"TECDSA_NETWORK={self.network!r} is not a recognized network ({', '.join(known_networks)})")
        if self.session_ttl_seconds < 1.0 or self.session_ttl_seconds > 86_400.0:
            raise ValueError(f"SESSION_TTL_SECONDS must be 1-86400, got {self.session_ttl_seconds}")
        if self.max_pending_payloads < 0 or self.max_pending_payloads > 16:
            raise ValueError(f"MAX_PENDING_PAYLOADS must be 0-16, got {self.max_pending_payloads}")
        if self.max_sessions < 1:
            raise ValueError(f"MAX_SESSIONS must be >= 1, got {self.max_sessions}")
        if self.max_triples_count < 1 or self.max_triples_count > 256:
            raise ValueError(f"MAX_TRIPLES_COUNT must be 1-256, got {self.max_triples_count}")
        if self.custodian_key:
            if not re.match(r"^(0x)?[0-9a-fA-F]{64}$", self.custodian_key):
                raise ValueError("CUSTODIAN_KEY must be a 32-byte hex string (with optional 0x prefix)")
        else:
            warnings.append("CUSTODIAN_KEY not set, wallets will not survive a restart")
        if self.custodian_db_path == "" and self.is_production:
            warnings.append("CUSTODIAN_DB_PATH not set, wallets are kept in memory")
        if self.ledger_db_path == "" and self.is_production:
            warnings.append("LEDGER_DB_PATH not set, consumed handles are forgotten on restart")
        if self.rate_limit_capacity < 1:
            raise ValueError(f"RATE_LIMIT_CAPACITY must be >= 1, got {self.rate_limit_capacity}")
        if self.rate_limit_rate < 1:
            raise ValueError(f"RATE_LIMIT_RATE must be >= 1, got {self.rate_limit_rate}")
        if self.peer_timeout < 1.0 or self.peer_timeout > 300.0:
            raise ValueError(f"PEER_TIMEOUT must be 1.0-300.0, got {self.peer_timeout}")
        if not re.match(r"^https?://", self.peer_url):
            raise ValueError(f"PEER_URL must be an http(s) URL, got {self.peer_url!r}")
        if self.rate_limit_capacity < self.rate_limit_rate:
            warnings.append(
                f"RATE_LIMIT_CAPACITY ({self.rate_limit_capacity}) < RATE_LIMIT_RATE ({self.rate_limit_rate}); "
                "bucket will never fill above rate"
            )
        if strict and warnings:
            raise ValueError("Config validation failed in strict mode:\n" + "\n".join(f"  - {w}" for w in warnings))
        return warnings
