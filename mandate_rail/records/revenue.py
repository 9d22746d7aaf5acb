"""mandate_rail.records.revenue

Revenue (ledger) event ingestion.

No reference, no revenue: an event whose metadata names no PSP
transaction, settlement batch or bank reference is written with status
``hallucination`` unless the caller set some other status explicitly
(``pending`` and friends are left alone). Hallucinations are never
eligible for settlement.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from mandate_rail.concurrency.idempotent import CreateResult, create_idempotent
from mandate_rail.core.codec import sha256_hex
from mandate_rail.core.config import RevenueEntity
from mandate_rail.core.time import to_iso, try_parse_dt
from mandate_rail.store.base import Collection, Record

logger = logging.getLogger(__name__)

STATUS_CONFIRMED = "confirmed"
STATUS_HALLUCINATION = "hallucination"

PSP_REFERENCE_KEYS = ("psp_transaction_id", "paypal_transaction_id", "transaction_id")
SETTLEMENT_REFERENCE_KEYS = ("settlement_batch_id", "settlement_id")
BANK_REFERENCE_KEYS = ("bank_reference", "bank_ref")
REFERENCE_KEYS = PSP_REFERENCE_KEYS + SETTLEMENT_REFERENCE_KEYS + BANK_REFERENCE_KEYS


class RevenueEvent(BaseModel):
    external_id: str
    amount: Any = None
    currency: str = "USD"
    occurred_at: str | None = None
    source: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def reference_key(metadata: Mapping[str, Any] | None) -> tuple[str, str] | None:
    """(key, value) of the first PSP / settlement / bank reference in ``metadata``."""

    if not metadata:
        return None
    for k in REFERENCE_KEYS:
        v = metadata.get(k)
        if v not in (None, ""):
            return k, str(v)
    return None


def reference_id(metadata: Mapping[str, Any] | None) -> str | None:
    ref = reference_key(metadata)
    return ref[1] if ref else None


def is_hallucination(event: RevenueEvent) -> bool:
    if reference_id(event.metadata) is not None:
        return False
    return not event.status or event.status == STATUS_CONFIRMED


def _amount_2dp(v: Any) -> str:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return ""
    return f"{f:.2f}" if math.isfinite(f) else ""


def compute_event_hash(event: RevenueEvent) -> str:
    """sha256(source_id | amount(2dp) | occurred_at iso | source | recipient-or-description)."""

    dt = try_parse_dt(event.occurred_at)
    occurred = to_iso(dt) if dt is not None else str(event.occurred_at or "")
    meta = event.metadata
    recipient = meta.get("recipient_id") or meta.get("recipient") or meta.get("description") or ""
    parts = [event.external_id, _amount_2dp(event.amount), occurred, str(event.source or ""), str(recipient)]
    return sha256_hex("|".join(parts))


class RevenueLedger:
    def __init__(self, collection: Collection, fields: RevenueEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or RevenueEntity()

    def build_data(self, event: RevenueEvent) -> Record:
        f = self.f
        try:
            amount = float(event.amount)
            if not math.isfinite(amount):
                raise ValueError(event.amount)
        except (TypeError, ValueError):
            logger.warning("revenue_amount_invalid", extra={"external_id": event.external_id, "amount": event.amount})
            amount = 0.0

        data: Record = {
            f.amount: amount,
            f.currency: event.currency,
            f.occurred_at: event.occurred_at,
            f.source: event.source,
            f.external_id: event.external_id,
            f.metadata: dict(event.metadata),
            f.event_hash: compute_event_hash(event),
        }
        if event.status is not None:
            data[f.status] = event.status
        if is_hallucination(event):
            logger.warning("revenue_marked_hallucination", extra={"external_id": event.external_id})
            data[f.status] = STATUS_HALLUCINATION
        return data

    async def ingest(self, event: RevenueEvent) -> CreateResult:
        dedupe: dict[str, Any] = {self.f.external_id: event.external_id}
        if event.source is not None:
            dedupe[self.f.source] = event.source
        return await create_idempotent(self.collection, dedupe=dedupe, data=self.build_data(event))

    async def recent(self, limit: int = 200) -> list[Record]:
        return await self.collection.list(sort="-created_date", limit=limit)
