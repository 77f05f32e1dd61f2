"""Pydantic request/response models for the engine REST API."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")
_ID_PATTERN = r"^[a-zA-Z0-9_\-.:]+$"

Envelope = dict[str, dict[str, Any]]


def _validate_hex(v: str, field_name: str) -> str:
    if not _HEX_RE.match(v):
        raise ValueError(f"{field_name} must be a hex string")
    return v


class StepRequest(BaseModel):
    """POST /v1/{phase}/step{n}: the client's envelope for step n."""

    user_id: str = Field(min_length=1, max_length=256, pattern=_ID_PATTERN)
    session_id: str = Field(min_length=1, max_length=256, pattern=_ID_PATTERN)
    msgs_0: Envelope = Field(default_factory=dict)
    confirmation: str | None = Field(default=None, max_length=130)

    @field_validator("confirmation")
    @classmethod
    def validate_confirmation(cls, v: str | None) -> str | None:
        return None if v is None else _validate_hex(v, "confirmation")


class KeygenStartRequest(StepRequest):
    """POST /v1/keygen/step1"""

    threshold: int = Field(default=2, ge=2, le=2)


class TriplesStartRequest(StepRequest):
    """POST /v1/triples/step1: ``triples_count`` pairs are generated."""

    triples_count: int = Field(default=1, ge=1, le=256)
    threshold: int = Field(default=2, ge=2, le=2)


class PresignStartRequest(StepRequest):
    """POST /v1/presign/step1: consumes two triples from the ledger."""

    wallet_id: str = Field(min_length=32, max_length=32)
    triple_handles: list[str] = Field(min_length=2, max_length=2)

    @field_validator("wallet_id")
    @classmethod
    def validate_wallet_id(cls, v: str) -> str:
        return _validate_hex(v, "wallet_id")

    @field_validator("triple_handles")
    @classmethod
    def validate_handles(cls, v: list[str]) -> list[str]:
        for handle in v:
            if len(handle) > 300 or not re.match(r"^[a-zA-Z0-9_\-.:]+:\d+$", handle):
                raise ValueError("triple handles must look like <batch_id>:<index>")
        return v


class SignStartRequest(StepRequest):
    """POST /v1/sign/step1: consumes one presignature."""

    presign_id: str = Field(min_length=1, max_length=256, pattern=_ID_PATTERN)
    digest: str = Field(min_length=64, max_length=66)

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        _validate_hex(v, "digest")
        if len(v.removeprefix("0x")) != 64:
            raise ValueError("digest must be 32 bytes")
        return v


class StepResponse(BaseModel):
    session_id: str
    step: int
    msgs_1: Envelope = Field(default_factory=dict)
    complete: bool = False
    confirmation: str | None = None
    result: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    detail: str
    action: str
    error: str


class SessionStatusResponse(BaseModel):
    """GET /v1/sessions/{user_id}/{session_id}"""

    user_id: str
    session_id: str
    phase: str
    role: str
    status: str
    step: int
    total_steps: int
    pending_steps: list[int] = Field(default_factory=list)
    expires_in: float


class SessionDeleteResponse(BaseModel):
    session_id: str
    deleted: bool


class TriplePubModel(BaseModel):
    handle: str
    big_a: str
    big_b: str
    big_c: str


class InventoryResponse(BaseModel):
    """GET /v1/triples/{user_id}: public parts of unconsumed material."""

    user_id: str
    triples: list[TriplePubModel] = Field(default_factory=list)
    presigns: list[str] = Field(default_factory=list)
    wallets: list[dict[str, str]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str
    active_sessions: int
    wallets: int
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    ready: bool
    checks: dict[str, bool]
