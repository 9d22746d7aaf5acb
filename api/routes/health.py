from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request

from api.deps import get_runtime
from api.schemas.common import HealthResponse
from mandate_rail import __version__
from mandate_rail.runtime import Runtime
from mandate_rail.store.factory import store_mode

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(request: Request, rt: Runtime = Depends(get_runtime)) -> HealthResponse:
    started_at = float(getattr(request.app.state, "started_at", time.monotonic()))
    uptime = time.monotonic() - started_at

    journal_ok = rt.journal.verify_hash_chain()
    tripped = rt.invariants.is_tripped()

    return HealthResponse(
        ok=journal_ok and not tripped,
        version=__version__,
        uptime_seconds=uptime,
        store_mode=store_mode(rt.store),
        journal_ok=journal_ok,
        details={"invariants_tripped": tripped},
    )
