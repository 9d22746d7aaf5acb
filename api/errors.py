from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from mandate_rail.core.exceptions import (
    CompoundInvariantFailure,
    ConstraintViolationError,
    InvariantViolationError,
    MandateError,
    MandateRailError,
    MoneyGateError,
    ProcessorRequestError,
    StoreError,
)


class ApiError(Exception):
    def __init__(self, code: str, message: str, status: int = 400, **extra: object) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.extra = extra


def _body(code: str, message: str, **extra: object) -> dict:
    return {"ok": False, "error": {"code": code, "message": message, **extra}}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content=_body(exc.code, exc.message, **exc.extra))


def _classify(exc: MandateRailError) -> tuple[int, str, dict[str, object]]:
    if isinstance(exc, InvariantViolationError):
        return 409, f"invariant.{exc.invariant}", {}
    if isinstance(exc, CompoundInvariantFailure):
        return 409, "invariant.compound", {"invariants": [f.invariant for f in exc.failures]}
    if isinstance(exc, MoneyGateError):
        return 409, "money_gate.failed", {"reason": exc.reason}
    if isinstance(exc, ConstraintViolationError):
        return 422, "mandate.constraint_violation", {}
    if isinstance(exc, MandateError):
        return 422, "mandate.invalid", {}
    if isinstance(exc, StoreError):
        return 503, "store.unavailable", {}
    if isinstance(exc, ProcessorRequestError):
        return 502, "processor.failed", {"status": exc.status}
    return 500, "internal", {}


async def mandate_rail_error_handler(request: Request, exc: MandateRailError) -> JSONResponse:
    status, code, extra = _classify(exc)
    return JSONResponse(status_code=status, content=_body(code, str(exc), **extra))
