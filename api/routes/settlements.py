from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from api.deps import get_orchestrator, require_operator
from mandate_rail.settlement.orchestrator import SettlementOrchestrator

router = APIRouter(prefix="/settlements")


@router.post("")
async def settle(
    envelope: dict[str, Any] = Body(...),
    dry_run: bool = Query(False),
    holder: str | None = Query(None),
    operator: str = Depends(require_operator),
    orch: SettlementOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Run one Intent -> Quote -> Payment orchestration for a signed intent.

    The settlement lease is held by ``holder`` when given, else by the operator.
    """

    result = await orch.settle(envelope, holder=holder or operator, dry_run=dry_run)
    return result.as_dict()
