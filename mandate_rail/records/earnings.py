"""mandate_rail.records.earnings"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field, field_validator

from mandate_rail.concurrency.idempotent import CreateResult, create_idempotent
from mandate_rail.core.config import EarningEntity
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.store.base import Collection, Record

STATUS_SETTLED_EXTERNALLY_PENDING = "settled_externally_pending"


class Earning(BaseModel):
    earning_id: str
    amount: float
    currency: str = "USD"
    occurred_at: str = Field(default_factory=lambda: to_iso(utc_now()))
    source: str | None = None
    beneficiary: str | None = None
    status: str = STATUS_SETTLED_EXTERNALLY_PENDING
    settlement_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("earning_id")
    @classmethod
    def id_required(cls, v: str) -> str:
        if not str(v).strip():
            raise ValueError("Earning requires earning_id")
        return v

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("Earning amount must be > 0")
        return v


class EarningWriter:
    def __init__(self, collection: Collection, fields: EarningEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or EarningEntity()

    def build_data(self, earning: Earning) -> Record:
        f = self.f
        data: Record = {
            f.earning_id: earning.earning_id,
            f.amount: earning.amount,
            f.currency: earning.currency,
            f.occurred_at: earning.occurred_at,
            f.source: earning.source,
            f.beneficiary: earning.beneficiary,
            f.status: earning.status,
            f.metadata: dict(earning.metadata),
        }
        if earning.settlement_id is not None:
            data[f.settlement_id] = earning.settlement_id
        return data

    async def create(self, earning: Earning) -> CreateResult:
        dedupe = {self.f.earning_id: earning.earning_id}
        return await create_idempotent(self.collection, dedupe=dedupe, data=self.build_data(earning))

    async def update(self, record_id: str, patch: dict[str, Any]) -> Record:
        return await self.collection.update(record_id, patch)
