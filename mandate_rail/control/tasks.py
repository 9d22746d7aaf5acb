"""mandate_rail.control.tasks

The individual jobs a control tick runs.

Every task returns a plain dict with an ``ok`` flag so the tick can be
serialized as one JSON line. Skips are ``{"ok": True, "skipped": True,
"reason": ...}``; nothing here moves money unless ``payout.dry_run`` is off.

Batch and item ids are derived from their contents, so a re-run on the same
day lands on the same records instead of creating new ones.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import httpx

from mandate_rail.core.config import Config, PayoutWindowConfig
from mandate_rail.core.exceptions import (
    InvariantViolationError,
    MandateRailError,
    MoneyGateError,
    ProcessorRequestError,
)
from mandate_rail.core.time import format_day, to_epoch_ms, to_iso, try_parse_dt, utc_now
from mandate_rail.integrity.gate import MoneyMovedGate
from mandate_rail.integrity.invariants import event_proof
from mandate_rail.processor.paypal import PayoutProcessor
from mandate_rail.records.earnings import STATUS_SETTLED_EXTERNALLY_PENDING
from mandate_rail.store.base import DEFAULT_SORT, Collections, Record
from mandate_rail.store.factory import store_mode

logger = logging.getLogger(__name__)

BATCH_PENDING_APPROVAL = "pending_approval"
BATCH_APPROVED = "approved"
BATCH_SUBMITTED = "submitted_to_paypal"
BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
COMMITTED_BATCH_STATUSES = (BATCH_APPROVED, BATCH_SUBMITTED, BATCH_PROCESSING)
OPEN_BATCH_STATUSES = (BATCH_PENDING_APPROVAL, *COMMITTED_BATCH_STATUSES)

ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_CANCELLED = "cancelled"

REVENUE_PAID_OUT = "paid_out"
REVENUE_PAYOUT_FAILED = "payout_failed"

# Earning metadata key naming the RevenueEvent record an earning pays out.
REVENUE_LINK_KEY = "revenue_event_id"

# PayPal batch_status -> our batch status.
PROCESSOR_STATUS_MAP = {
    "SUCCESS": BATCH_COMPLETED,
    "DENIED": BATCH_FAILED,
    "CANCELED": BATCH_FAILED,
    "PENDING": BATCH_PROCESSING,
    "PROCESSING": BATCH_PROCESSING,
}

_RECIPIENT_ALIASES = {
    "paypal_email": "paypal",
    "bank": "bank_wire",
    "payoneer_id": "payoneer",
}

# Failures a task reports instead of raising.
TASK_ERRORS: tuple[type[BaseException], ...] = (MandateRailError, httpx.HTTPError)


def is_within_window_utc(window: PayoutWindowConfig, at: datetime | None = None) -> bool:
    """Hour-of-day window in UTC. ``start == end`` means always open; wraps past midnight."""

    s = int(window.start_hour_utc)
    e = int(window.end_hour_utc)
    if s == e:
        return True
    h = (at or utc_now()).hour
    if s < e:
        return s <= h < e
    return h >= s or h < e


def normalize_recipient_type(value: Any) -> str:
    v = str(value or "").strip().lower()
    if not v:
        return "beneficiary"
    return _RECIPIENT_ALIASES.get(v, v)


def resolve_recipient(recipient_type: str, meta: Mapping[str, Any] | None, beneficiary: str | None) -> str:
    meta = meta or {}
    if recipient_type == "bank_wire":
        dest = meta.get("bank_wire_destination") or {}
        return str(dest.get("account") or "") if isinstance(dest, Mapping) else ""
    if recipient_type == "payoneer":
        return str(meta.get("payoneer_id") or "")
    if recipient_type == "paypal":
        return str(meta.get("paypal_email") or meta.get("recipient") or "")
    return str(meta.get("recipient") or beneficiary or "")


def make_batch_id(
    *,
    settlement_id: str | None,
    beneficiary: str | None,
    recipient_type: str | None,
    currency: str | None,
    earning_ids: list[str],
    day: str,
) -> str:
    base = json.dumps(
        {
            "settlementId": settlement_id,
            "beneficiary": beneficiary,
            "recipientType": recipient_type,
            "currency": currency,
            "earningIds": sorted(earning_ids),
        },
        separators=(",", ":"),
    )
    h = hashlib.sha256(base.encode("utf-8")).hexdigest()[:10].upper()
    return f"PAYBATCH-{day}-{h}"


def make_item_id(*, batch_id: str, earning_id: str, day: str) -> str:
    h = hashlib.sha256(f"{batch_id}|{earning_id}".encode()).hexdigest()[:12].upper()
    return f"PAYITEM-{day}-{h}"


def _num(v: Any) -> float | None:
    try:
        n = float(v)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _notes(rec: Mapping[str, Any], key: str) -> dict[str, Any]:
    raw = rec.get(key)
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return dict(raw) if isinstance(raw, Mapping) else {}


def _age_hours(now: datetime, at: datetime) -> float:
    return round((now - at).total_seconds() / 3600.0, 2)


class ControlTasks:
    def __init__(
        self,
        config: Config,
        collections: Collections,
        *,
        processor: PayoutProcessor | None = None,
        money_gate: MoneyMovedGate | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.auto = config.autonomous
        self.collections = collections
        self.processor = processor
        self.money_gate = money_gate
        self.clock = clock
        ent = config.entities
        self.fb = ent.payout_batch
        self.fi = ent.payout_item
        self.fe = ent.earning
        self.fr = ent.revenue
        self.batches = collections.get(self.fb.entity_name)
        self.items = collections.get(self.fi.entity_name)
        self.earnings = collections.get(self.fe.entity_name)
        self.revenue = collections.get(self.fr.entity_name)

    # --- health -----------------------------------------------------------

    async def check_health(self) -> dict[str, Any]:
        processor_ok = True
        processor_detail = "skipped"
        if self.auto.require_processor_health:
            if self.processor is None:
                processor_ok, processor_detail = False, "not_configured"
            else:
                try:
                    processor_ok = bool(await self.processor.ping())
                    processor_detail = "ok" if processor_ok else "ping_failed"
                except TASK_ERRORS as e:
                    processor_ok, processor_detail = False, str(e)

        store = self.collections.store
        store_ok = True
        store_detail = "ok"
        try:
            # FallbackStore switches to the offline file on network-shaped errors.
            await store.list(self.config.store.health_entity, DEFAULT_SORT, 1, 0, ["id"])
        except TASK_ERRORS as e:
            store_ok, store_detail = False, str(e)

        out = {
            "at": to_iso(self.clock()),
            "ok": processor_ok and store_ok,
            "processorOk": processor_ok,
            "storeOk": store_ok,
            "details": {"processor": processor_detail, "store": store_detail, "storeMode": store_mode(store)},
        }
        if not out["ok"]:
            logger.warning("health_check_failed", extra={"details": out["details"]})
        return out

    # --- reporting --------------------------------------------------------

    async def available_balance(self) -> dict[str, Any]:
        fr, fb, fi = self.fr, self.fb, self.fi
        confirmed = paid_out = committed = 0.0

        for r in await self.revenue.list_all():
            amount = _num(r.get(fr.amount))
            if amount is None:
                continue
            status = r.get(fr.status)
            if status == "paid_out":
                paid_out += amount
            elif status in ("confirmed", "reconciled"):
                confirmed += amount

        committed_ids = {
            str(b.get(fb.batch_id))
            for b in await self.batches.list_all()
            if b.get(fb.status) in COMMITTED_BATCH_STATUSES and b.get(fb.batch_id)
        }
        for it in await self.items.list_all():
            if str(it.get(fi.batch_id) or "") not in committed_ids:
                continue
            if it.get(fi.status) == ITEM_CANCELLED:
                continue
            amount = _num(it.get(fi.amount))
            if amount is not None:
                committed += amount

        return {
            "ok": True,
            "totalConfirmedRevenue": round(confirmed, 2),
            "totalPaidOut": round(paid_out, 2),
            "totalCommittedToPayouts": round(committed, 2),
            "availableBalance": round(confirmed - paid_out - committed, 2),
        }

    async def pending_approval(self) -> dict[str, Any]:
        rows = await self.batches.list_all(query={self.fb.status: BATCH_PENDING_APPROVAL})
        return {"ok": True, "count": len(rows), "batches": rows}

    async def stuck_payouts(self) -> dict[str, Any]:
        fb, fi = self.fb, self.fi
        now = self.clock()
        batch_cutoff = self.auto.stuck_batch_hours * 3600.0
        item_cutoff = self.auto.stuck_item_hours * 3600.0

        stuck_batches: list[dict[str, Any]] = []
        for b in await self.batches.list_all():
            status = b.get(fb.status)
            if status not in OPEN_BATCH_STATUSES:
                continue
            at = (
                try_parse_dt(b.get(fb.submitted_at))
                or try_parse_dt(b.get(fb.approved_at))
                or try_parse_dt(b.get("created_date"))
            )
            if at is None or (now - at).total_seconds() < batch_cutoff:
                continue
            stuck_batches.append(
                {
                    "batchId": b.get(fb.batch_id),
                    "status": status,
                    "totalAmount": b.get(fb.total_amount),
                    "currency": b.get(fb.currency),
                    "ageHours": _age_hours(now, at),
                }
            )

        stuck_items: list[dict[str, Any]] = []
        for it in await self.items.list_all():
            status = it.get(fi.status)
            if status not in (ITEM_PENDING, ITEM_PROCESSING):
                continue
            at = try_parse_dt(it.get(fi.processed_at)) or try_parse_dt(it.get("created_date"))
            if at is None or (now - at).total_seconds() < item_cutoff:
                continue
            stuck_items.append(
                {
                    "itemId": it.get(fi.item_id),
                    "batchId": it.get(fi.batch_id),
                    "status": status,
                    "amount": it.get(fi.amount),
                    "currency": it.get(fi.currency),
                    "ageHours": _age_hours(now, at),
                }
            )

        if stuck_batches or stuck_items:
            logger.warning(
                "payouts_stuck", extra={"batches": len(stuck_batches), "items": len(stuck_items)}
            )
        return {"ok": True, "stuckBatches": stuck_batches, "stuckItems": stuck_items}

    # --- batch creation ---------------------------------------------------

    async def _eligible_earnings(self) -> list[Record]:
        fe, fi = self.fe, self.fi
        payout = self.auto.payout
        query: dict[str, Any] = {fe.status: STATUS_SETTLED_EXTERNALLY_PENDING}
        if payout.settlement_id:
            query[fe.settlement_id] = payout.settlement_id
        rows = await self.earnings.list_all(query=query)
        if payout.beneficiary:
            rows = [e for e in rows if str(e.get(fe.beneficiary) or "") == payout.beneficiary]

        batched = {str(it.get(fi.earning_id)) for it in await self.items.list_all() if it.get(fi.earning_id)}
        return [e for e in rows if e.get(fe.earning_id) and str(e.get(fe.earning_id)) not in batched]

    async def create_payout_batches(self, *, balance: Mapping[str, Any] | None = None) -> dict[str, Any]:
        payout = self.auto.payout
        now = self.clock()
        if not is_within_window_utc(payout.window_utc, now):
            return {
                "ok": True,
                "skipped": True,
                "reason": "outside_payout_window_utc",
                "windowUtc": payout.window_utc.model_dump(),
            }

        if balance is None or balance.get("ok") is not True:
            balance = await self.available_balance()
        avail = _num(balance.get("availableBalance"))
        if avail is not None and avail < payout.min_available_balance:
            return {
                "ok": True,
                "skipped": True,
                "reason": "below_min_available_balance",
                "availableBalance": avail,
                "minAvailableBalance": payout.min_available_balance,
            }

        fe = self.fe
        groups: dict[str, dict[str, Any]] = {}
        for e in await self._eligible_earnings():
            meta = e.get(fe.metadata) if isinstance(e.get(fe.metadata), Mapping) else {}
            rtype = normalize_recipient_type(
                payout.recipient_type
                or meta.get("recipient_type")
                or meta.get("payout_method")
                or meta.get("payout_route")
            )
            beneficiary = str(e.get(fe.beneficiary) or "")
            key = f"{beneficiary}::{rtype}"
            g = groups.setdefault(key, {"beneficiary": beneficiary, "recipientType": rtype, "earnings": []})
            g["earnings"].append(e)

        day = format_day(now)
        created: list[dict[str, Any]] = []
        for g in groups.values():
            by_currency: dict[str, list[Record]] = {}
            for e in g["earnings"]:
                by_currency.setdefault(str(e.get(fe.currency) or ""), []).append(e)
            for currency, rows in by_currency.items():
                created.append(
                    await self._create_batch(
                        beneficiary=g["beneficiary"],
                        recipient_type=g["recipientType"],
                        currency=currency,
                        earnings=rows,
                        day=day,
                    )
                )

        logger.info("payout_batches_planned", extra={"count": len(created), "dry_run": payout.dry_run})
        return {"ok": True, "dryRun": payout.dry_run, "batches": created}

    async def _create_batch(
        self, *, beneficiary: str, recipient_type: str, currency: str, earnings: list[Record], day: str
    ) -> dict[str, Any]:
        fe, fb, fi = self.fe, self.fb, self.fi
        payout = self.auto.payout
        earning_ids = [str(e.get(fe.earning_id)) for e in earnings]
        batch_id = make_batch_id(
            settlement_id=payout.settlement_id,
            beneficiary=beneficiary or None,
            recipient_type=recipient_type or None,
            currency=currency or None,
            earning_ids=earning_ids,
            day=day,
        )
        summary: dict[str, Any] = {
            "batchId": batch_id,
            "beneficiary": beneficiary or None,
            "recipientType": recipient_type,
            "currency": currency or None,
            "earningCount": len(earnings),
            "dryRun": payout.dry_run,
        }

        recipients: dict[str, str] = {}
        missing: list[str] = []
        for e in earnings:
            meta = e.get(fe.metadata) if isinstance(e.get(fe.metadata), Mapping) else {}
            recipient = resolve_recipient(recipient_type, meta, beneficiary or None).strip()
            eid = str(e.get(fe.earning_id))
            if recipient:
                recipients[eid] = recipient
            else:
                missing.append(eid)
        if missing:
            return {**summary, "itemCount": 0, "skipped": True, "reason": "missing_recipient", "missingRecipientEarningIds": missing}

        total = round(sum(_num(e.get(fe.amount)) or 0.0 for e in earnings), 2)
        summary["totalAmount"] = total
        if payout.dry_run:
            return {**summary, "itemCount": len(earnings), "created": False}

        existing = await self.batches.find_one({fb.batch_id: batch_id})
        if existing is None:
            await self.batches.create(
                {
                    fb.batch_id: batch_id,
                    fb.total_amount: total,
                    fb.currency: currency or None,
                    fb.status: BATCH_PENDING_APPROVAL,
                    fb.earning_ids: earning_ids,
                    fb.notes: {
                        "settlement_id": payout.settlement_id,
                        "beneficiary": beneficiary or None,
                        "recipient_type": recipient_type,
                    },
                },
                unique_on=[fb.batch_id],
            )

        for e in earnings:
            eid = str(e.get(fe.earning_id))
            item_id = make_item_id(batch_id=batch_id, earning_id=eid, day=day)
            if await self.items.find_one({fi.item_id: item_id}) is not None:
                continue
            meta = e.get(fe.metadata) if isinstance(e.get(fe.metadata), Mapping) else {}
            await self.items.create(
                {
                    fi.item_id: item_id,
                    fi.batch_id: batch_id,
                    fi.earning_id: eid,
                    fi.recipient: recipients[eid],
                    fi.recipient_type: recipient_type,
                    fi.amount: _num(e.get(fe.amount)),
                    fi.currency: currency or None,
                    fi.status: ITEM_PENDING,
                    fi.revenue_event_id: meta.get(REVENUE_LINK_KEY) or None,
                },
                unique_on=[fi.item_id],
            )

        logger.info("payout_batch_created", extra={"batch_id": batch_id, "items": len(earnings), "total": total})
        return {**summary, "itemCount": len(earnings), "created": existing is None}

    # --- approval ---------------------------------------------------------

    async def approve_batch(self, batch: Record) -> dict[str, Any]:
        fb = self.fb
        batch_id = batch.get(fb.batch_id)
        approved_at = to_iso(self.clock())
        if self.auto.payout.dry_run:
            return {"ok": True, "dryRun": True, "batchId": batch_id, "approvedAt": approved_at}
        try:
            await self.batches.update(
                str(batch["id"]),
                {fb.status: BATCH_APPROVED, fb.approved_at: approved_at},
                expect={fb.status: BATCH_PENDING_APPROVAL},
            )
        except TASK_ERRORS as e:
            logger.warning("payout_batch_approve_failed", extra={"batch_id": batch_id, "error": str(e)})
            return {"ok": False, "batchId": batch_id, "error": str(e)}
        logger.info("payout_batch_approved", extra={"batch_id": batch_id})
        return {"ok": True, "batchId": batch_id, "approvedAt": approved_at}

    async def auto_approve(self, pending: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Approve pending batches older than the configured age.

        Anything over the 2FA threshold or the max batch amount goes to
        ``needsReview`` instead.
        """

        fb = self.fb
        cfg = self.auto.payout.auto_approve
        if pending is None or pending.get("ok") is not True:
            pending = await self.pending_approval()

        now_ms = to_epoch_ms(self.clock())
        threshold_ms = max(0, cfg.pending_age_minutes) * 60 * 1000
        attempts: list[dict[str, Any]] = []
        needs_review: list[dict[str, Any]] = []

        for b in pending.get("batches") or []:
            batch_id = b.get(fb.batch_id)
            if not batch_id:
                continue
            amount = _num(b.get(fb.total_amount))
            created = try_parse_dt(b.get("created_date"))
            if created is None:
                needs_review.append({"batchId": batch_id, "reason": "missing_created_date", "amount": amount})
                continue
            if now_ms - to_epoch_ms(created) < threshold_ms:
                continue
            if amount is None:
                needs_review.append({"batchId": batch_id, "reason": "missing_amount"})
                continue
            if cfg.two_fa_threshold > 0 and amount > cfg.two_fa_threshold:
                needs_review.append(
                    {"batchId": batch_id, "reason": "above_2fa_threshold", "amount": amount, "threshold": cfg.two_fa_threshold}
                )
                continue
            if cfg.max_batch_amount is not None and amount > cfg.max_batch_amount:
                needs_review.append(
                    {"batchId": batch_id, "reason": "amount_above_max", "amount": amount, "max": cfg.max_batch_amount}
                )
                continue

            res = await self.approve_batch(b)
            attempts.append({"batchId": batch_id, "res": res})
            if res.get("ok") is not True:
                needs_review.append({"batchId": batch_id, "reason": "approve_failed", "error": res.get("error")})

        failed = sum(1 for x in needs_review if x["reason"] == "approve_failed")
        return {
            "ok": not needs_review,
            "approvedCount": len(attempts) - failed,
            "attemptedCount": len(attempts),
            "needsReviewCount": len(needs_review),
            "needsReview": needs_review,
        }

    # --- submission -------------------------------------------------------

    async def submit_approved_batches(self, health: Mapping[str, Any] | None = None) -> dict[str, Any]:
        payout = self.auto.payout
        if not is_within_window_utc(payout.window_utc, self.clock()):
            return {
                "ok": True,
                "skipped": True,
                "reason": "outside_payout_window_utc",
                "windowUtc": payout.window_utc.model_dump(),
            }
        if health is not None and health.get("processorOk") is False:
            return {"ok": True, "skipped": True, "reason": "processor_unhealthy"}
        if payout.dry_run:
            return {"ok": True, "skipped": True, "reason": "payout_dry_run_enabled"}
        if self.processor is None:
            return {"ok": True, "skipped": True, "reason": "processor_not_configured"}

        fb = self.fb
        attempts: list[dict[str, Any]] = []
        for b in await self.batches.list_all(query={fb.status: BATCH_APPROVED}):
            batch_id = b.get(fb.batch_id)
            notes = _notes(b, fb.notes)
            rtype = normalize_recipient_type(notes.get("recipient_type"))
            if not batch_id or notes.get("paypal_payout_batch_id"):
                continue
            if rtype not in ("paypal", "beneficiary"):
                continue
            attempts.append(await self._submit_batch(b, notes))

        failures = [a for a in attempts if a.get("ok") is not True]
        return {
            "ok": not failures,
            "attemptedCount": len(attempts),
            "failedCount": len(failures),
            "failures": failures,
            "attempts": attempts,
        }

    async def _submit_batch(self, batch: Record, notes: dict[str, Any]) -> dict[str, Any]:
        if self.processor is None:
            raise ProcessorRequestError("processor_not_configured")
        fb, fi = self.fb, self.fi
        batch_id = str(batch.get(fb.batch_id))
        items = await self.items.list_all(query={fi.batch_id: batch_id})
        live = [it for it in items if it.get(fi.status) != ITEM_CANCELLED]
        if not live:
            return {"ok": False, "batchId": batch_id, "error": "no_payout_items"}

        body = [
            {
                "recipient_type": "EMAIL",
                "receiver": str(it.get(fi.recipient)),
                "amount": {"value": f"{_num(it.get(fi.amount)) or 0.0:.2f}", "currency": str(it.get(fi.currency) or batch.get(fb.currency) or "")},
                "sender_item_id": str(it.get(fi.item_id)),
            }
            for it in live
        ]
        try:
            resp = await self.processor.create_payout_batch(sender_batch_id=batch_id, items=body)
            provider_id = (resp.get("batch_header") or {}).get("payout_batch_id")
            if not provider_id:
                return {"ok": False, "batchId": batch_id, "error": "processor_response_missing_batch_id"}
            submitted_at = to_iso(self.clock())
            await self.batches.update(
                str(batch["id"]),
                {
                    fb.status: BATCH_SUBMITTED,
                    fb.submitted_at: submitted_at,
                    fb.notes: {**notes, "paypal_payout_batch_id": provider_id},
                },
            )
            for it in live:
                await self.items.update(str(it["id"]), {fi.status: ITEM_PROCESSING})
        except TASK_ERRORS as e:
            logger.warning("payout_batch_submit_failed", extra={"batch_id": batch_id, "error": str(e)})
            return {"ok": False, "batchId": batch_id, "error": str(e)}

        logger.info("payout_batch_submitted", extra={"batch_id": batch_id, "provider_batch_id": provider_id})
        return {"ok": True, "batchId": batch_id, "providerBatchId": provider_id, "itemCount": len(live)}

    # --- reconciliation ---------------------------------------------------

    async def reconcile_batches(self) -> dict[str, Any]:
        """Pull provider status for open batches and close the finished ones.

        A completed item moves its linked revenue event to ``paid_out`` only
        after the money-moved gate passes on it. A failed item or a refused
        gate moves it to ``payout_failed``. A tripped invariant propagates and
        leaves the batch open.
        """

        if self.processor is None:
            return {"ok": True, "skipped": True, "reason": "processor_not_configured"}

        fb = self.fb
        open_rows = await self.batches.list_all(query={fb.status: [BATCH_SUBMITTED, BATCH_PROCESSING]})
        synced: list[dict[str, Any]] = []
        failures: list[dict[str, Any]] = []
        revenue: list[dict[str, Any]] = []
        for b in open_rows:
            batch_id = b.get(fb.batch_id)
            provider_id = _notes(b, fb.notes).get("paypal_payout_batch_id")
            if not provider_id:
                continue
            try:
                resp = await self.processor.get_payout_batch(str(provider_id))
                provider_status = str((resp.get("batch_header") or {}).get("batch_status") or "").upper()
                status = PROCESSOR_STATUS_MAP.get(provider_status, BATCH_PROCESSING)
                if status != b.get(fb.status):
                    patch: dict[str, Any] = {fb.status: status}
                    if status in (BATCH_COMPLETED, BATCH_FAILED):
                        patch[fb.processed_at] = to_iso(self.clock())
                        revenue.extend(await self._close_items(str(batch_id), status, patch[fb.processed_at], resp))
                    await self.batches.update(str(b["id"]), patch)
                synced.append({"batchId": batch_id, "providerStatus": provider_status, "status": status})
            except InvariantViolationError:
                raise
            except TASK_ERRORS as e:
                logger.warning("payout_batch_reconcile_failed", extra={"batch_id": batch_id, "error": str(e)})
                failures.append({"batchId": batch_id, "error": str(e)})

        failures.extend(r for r in revenue if r.get("error"))
        return {
            "ok": not failures,
            "syncedCount": len(synced),
            "synced": synced,
            "revenue": revenue,
            "failures": failures,
        }

    async def _close_items(
        self, batch_id: str, status: str, processed_at: str, resp: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        fi = self.fi
        provider_items = {
            str((pi.get("payout_item") or {}).get("sender_item_id")): pi
            for pi in resp.get("items") or []
            if isinstance(pi, Mapping)
        }
        out: list[dict[str, Any]] = []
        for it in await self.items.list_all(query={fi.batch_id: batch_id}):
            if it.get(fi.status) == ITEM_CANCELLED:
                continue
            provider_item = provider_items.get(str(it.get(fi.item_id))) or {}
            patch: dict[str, Any] = {fi.status: status, fi.processed_at: processed_at}
            if provider_item.get("transaction_id"):
                patch[fi.transaction_id] = provider_item["transaction_id"]
            await self.items.update(str(it["id"]), patch)
            if it.get(fi.revenue_event_id):
                out.append(await self._settle_revenue({**it, **patch}, provider_item))
        return out

    async def _settle_revenue(self, item: Record, provider_item: Mapping[str, Any]) -> dict[str, Any]:
        fi, fr = self.fi, self.fr
        rev_id = str(item.get(fi.revenue_event_id))
        out: dict[str, Any] = {"itemId": item.get(fi.item_id), "revenueEventId": rev_id}

        event = await self.revenue.find_one({"id": rev_id})
        if event is None:
            logger.warning("payout_revenue_missing", extra={"revenue_event_id": rev_id})
            return {**out, "error": "revenue_event_missing"}
        if event.get(fr.status) == REVENUE_PAID_OUT:
            return {**out, "status": REVENUE_PAID_OUT}
        if item.get(fi.status) != BATCH_COMPLETED:
            await self.revenue.update(rev_id, {fr.status: REVENUE_PAYOUT_FAILED})
            return {**out, "status": REVENUE_PAYOUT_FAILED}
        if self.money_gate is None:
            logger.warning("payout_revenue_ungated", extra={"revenue_event_id": rev_id})
            return {**out, "error": "money_gate_not_configured"}

        gate = self.money_gate
        candidate: Record = dict(event)
        try:
            proof = event_proof(event) or gate.validator.derive_proof(event)
            if proof is not None:
                refs = {
                    "payout_item_id": provider_item.get("payout_item_id"),
                    "payout_transaction_id": item.get(fi.transaction_id),
                }
                proof = {**proof, **{k: v for k, v in refs.items() if v}}
                gate.evidence.add_block(rev_id, proof)
                candidate["verification_proof"] = proof
            passed = await gate.assert_money_moved(candidate)
        except (MoneyGateError, InvariantViolationError) as e:
            await self.revenue.update(rev_id, {fr.status: REVENUE_PAYOUT_FAILED})
            logger.error("money_gate_failed", extra={"revenue_event_id": rev_id, "error": str(e)})
            if isinstance(e, InvariantViolationError):
                raise
            return {**out, "status": REVENUE_PAYOUT_FAILED, "error": str(e)}

        meta = event.get(fr.metadata) if isinstance(event.get(fr.metadata), Mapping) else {}
        await self.revenue.update(
            rev_id,
            {
                fr.status: REVENUE_PAID_OUT,
                fr.metadata: {
                    **meta,
                    "verification_proof": passed.proof,
                    "money_moved_gate_passed": True,
                    "gate_passed_at": to_iso(self.clock()),
                    "evidence_hash": passed.block.get("hash"),
                },
            },
        )
        logger.info("revenue_paid_out", extra={"revenue_event_id": rev_id, "evidence_hash": passed.block.get("hash")})
        return {**out, "status": REVENUE_PAID_OUT, "evidenceHash": passed.block.get("hash")}
