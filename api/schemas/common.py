from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    ok: bool = False
    error: ErrorDetail


class TrippedBreakerResponse(BaseModel):
    name: str
    tripped: bool = True
    tripped_at: str
    message: str
    reset_policy: str


class InvariantsResponse(BaseModel):
    ok: bool
    count: int
    breakers: list[TrippedBreakerResponse]


class HealthResponse(BaseModel):
    ok: bool
    version: str
    uptime_seconds: float
    store_mode: str
    journal_ok: bool
    details: dict[str, Any] = {}
