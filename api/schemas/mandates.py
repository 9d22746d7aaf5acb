from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class VerificationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    violations: list[str]
    kid: str | None = None
    payload_hash: str | None = Field(default=None, alias="payloadHash")
