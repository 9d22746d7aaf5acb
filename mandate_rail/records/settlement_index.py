"""mandate_rail.records.settlement_index

One row per settled revenue event, keyed by its external id. Presence is
the whole signal.
"""

from __future__ import annotations

from typing import Any

from mandate_rail.concurrency.idempotent import CreateResult, create_idempotent
from mandate_rail.core.config import SettlementItemEntity
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.store.base import Collection


class SettlementIndex:
    def __init__(self, collection: Collection, fields: SettlementItemEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or SettlementItemEntity()

    async def is_settled(self, revenue_external_id: str) -> bool:
        rid = str(revenue_external_id or "").strip()
        if not rid:
            return False
        return await self.collection.find_one({self.f.revenue_external_id: rid}) is not None

    async def mark_settled(
        self,
        revenue_external_id: str,
        *,
        payment_mandate_id: str | None,
        amount: float | None,
        currency: str | None,
        occurred_at: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> CreateResult:
        rid = str(revenue_external_id or "").strip()
        if not rid:
            raise ValueError("revenue_external_id is required")
        f = self.f
        data: dict[str, Any] = {
            f.revenue_external_id: rid,
            f.payment_mandate_id: payment_mandate_id,
            f.occurred_at: occurred_at or to_iso(utc_now()),
            f.amount: amount,
            f.currency: currency,
        }
        if meta is not None:
            data[f.meta] = meta
        return await create_idempotent(self.collection, dedupe={f.revenue_external_id: rid}, data=data)
