"""mandate_rail.records.payouts

Payout requests: the only artifact settlement emits. A human or the
control loop takes it from READY_FOR_REVIEW onward.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field, field_validator

from mandate_rail.concurrency.idempotent import CreateResult, create_idempotent
from mandate_rail.core.config import PayoutRequestEntity
from mandate_rail.store.base import Collection, Record

STATUS_READY_FOR_REVIEW = "READY_FOR_REVIEW"


class PayoutRequest(BaseModel):
    amount: float
    currency: str
    status: str = STATUS_READY_FOR_REVIEW
    source: str = "ap2"
    external_id: str
    occurred_at: str
    destination_summary: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("Payout request requires a numeric amount")
        if v <= 0:
            raise ValueError("Payout request amount must be > 0")
        return v


class PayoutRequestWriter:
    def __init__(self, collection: Collection, fields: PayoutRequestEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or PayoutRequestEntity()

    def build_data(self, req: PayoutRequest) -> Record:
        f = self.f
        return {
            f.amount: req.amount,
            f.currency: req.currency,
            f.status: req.status,
            f.source: req.source,
            f.external_id: req.external_id,
            f.occurred_at: req.occurred_at,
            f.destination_summary: dict(req.destination_summary),
            f.metadata: dict(req.metadata),
        }

    async def create(self, req: PayoutRequest) -> CreateResult:
        dedupe = {self.f.external_id: req.external_id, self.f.source: req.source}
        return await create_idempotent(self.collection, dedupe=dedupe, data=self.build_data(req))
