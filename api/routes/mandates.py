from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from api.deps import Operator, get_config, get_resolver
from api.schemas.mandates import VerificationResponse
from mandate_rail.core.config import Config
from mandate_rail.mandate.keys import PublicKeyResolver
from mandate_rail.mandate.signer import verify_mandate

router = APIRouter(prefix="/mandates", dependencies=[Operator])


@router.post("/verify", response_model=VerificationResponse, response_model_by_alias=True)
def verify(
    envelope: dict[str, Any] = Body(...),
    config: Config = Depends(get_config),
    resolver: PublicKeyResolver = Depends(get_resolver),
) -> VerificationResponse:
    res = verify_mandate(envelope, clock_skew_ms=config.mandate.clock_skew_ms, resolve_public_key=resolver)
    return VerificationResponse.model_validate(res.as_dict())
