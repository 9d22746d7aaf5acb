from __future__ import annotations

from fastapi import APIRouter, Depends

from api.deps import Operator, get_runtime
from api.schemas.common import InvariantsResponse, TrippedBreakerResponse
from mandate_rail.runtime import Runtime

router = APIRouter(prefix="/invariants", dependencies=[Operator])


@router.get("", response_model=InvariantsResponse)
def tripped(rt: Runtime = Depends(get_runtime)) -> InvariantsResponse:
    breakers = [TrippedBreakerResponse(**b.as_dict()) for b in rt.invariants.get_tripped_breakers()]
    return InvariantsResponse(ok=not breakers, count=len(breakers), breakers=breakers)
