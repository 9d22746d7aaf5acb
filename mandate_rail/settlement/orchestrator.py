"""mandate_rail.settlement.orchestrator

Intent → Quote → Payment → PayoutRequest.

One orchestration per intent at a time (work lease). Every write is an
idempotent create, and quote/payment ids are derived from the intent and
the selected items, so re-running the same intent over the same items
lands on the same records instead of emitting a second payout.

States, in order:
INTENT_VERIFIED → LEASE_ACQUIRED → ITEMS_SELECTED → QUOTE_SIGNED →
PAYMENT_SIGNED → PAYOUT_EMITTED

Deferrals (``lease_unavailable``, ``no_eligible_revenue``) and gate
rejections (``invalid_intent``, ``posp_insufficient``) come back as
results. Constraint violations raise.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from mandate_rail.concurrency.idempotent import CreateResult
from mandate_rail.concurrency.lease import LeaseResult, WorkLease
from mandate_rail.core.codec import payload_hash
from mandate_rail.core.config import Config
from mandate_rail.core.dedupe import DedupeStore
from mandate_rail.core.exceptions import ConstraintViolationError, MandateError
from mandate_rail.core.journal import Journal, JournalEventType
from mandate_rail.core.time import plus_ms, to_iso, utc_now
from mandate_rail.mandate.keys import PublicKeyResolver
from mandate_rail.mandate.models import (
    Cart,
    CartItem,
    MandateKind,
    PaymentPayload,
    PayoutAction,
    QuotePayload,
    SettlementTerms,
)
from mandate_rail.mandate.signer import VerificationResult, build_chain_hash, sign_mandate, verify_mandate
from mandate_rail.records.mandates import STATUS_VERIFIED, MandateStore
from mandate_rail.records.payouts import STATUS_READY_FOR_REVIEW, PayoutRequest, PayoutRequestWriter
from mandate_rail.records.revenue import STATUS_HALLUCINATION, reference_id
from mandate_rail.records.settlement_index import SettlementIndex
from mandate_rail.reputation.posp import ReputationGate
from mandate_rail.store.base import Collections, Record

logger = logging.getLogger(__name__)

PAYOUT_METADATA_ITEMS = 20
ACTION_KIND = "base44.create"


class SettlementState(StrEnum):
    INTENT_VERIFIED = "INTENT_VERIFIED"
    LEASE_ACQUIRED = "LEASE_ACQUIRED"
    ITEMS_SELECTED = "ITEMS_SELECTED"
    QUOTE_SIGNED = "QUOTE_SIGNED"
    PAYMENT_SIGNED = "PAYMENT_SIGNED"
    PAYOUT_EMITTED = "PAYOUT_EMITTED"


class SettlementReason(StrEnum):
    INVALID_INTENT = "invalid_intent"
    POSP_INSUFFICIENT = "posp_insufficient"
    LEASE_UNAVAILABLE = "lease_unavailable"
    NO_ELIGIBLE_REVENUE = "no_eligible_revenue"
    RECENTLY_SETTLED = "recently_settled"


@dataclass(frozen=True, slots=True)
class SettlementResult:
    ok: bool
    state: SettlementState | None = None
    reason: SettlementReason | None = None
    dry_run: bool = False
    acquired: bool = False
    lease: LeaseResult | None = None
    violations: list[str] = field(default_factory=list)
    posp: dict[str, Any] | None = None
    intent_stored_id: str | None = None
    quote_stored_id: str | None = None
    payment_stored_id: str | None = None
    payout_created_id: str | None = None
    payout_deduped: bool = False
    payout_external_id: str | None = None
    settlement_index_ids: list[str] = field(default_factory=list)
    total: float | None = None
    currency: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "ok": self.ok,
            "state": str(self.state) if self.state else None,
            "dryRun": self.dry_run,
            "acquired": self.acquired,
            "lease": self.lease.as_dict() if self.lease else None,
            "intentStoredId": self.intent_stored_id,
            "quoteStoredId": self.quote_stored_id,
            "paymentStoredId": self.payment_stored_id,
            "payoutCreatedId": self.payout_created_id,
            "payoutDeduped": self.payout_deduped,
            "payoutExternalId": self.payout_external_id,
            "settlementIndexIds": list(self.settlement_index_ids),
            "total": self.total,
            "currency": self.currency,
        }
        if self.reason is not None:
            out["reason"] = str(self.reason)
        if not self.ok and self.reason is not None:
            out["error"] = str(self.reason)
        if self.violations:
            out["violations"] = list(self.violations)
        if self.posp is not None:
            out["posp"] = self.posp
        return out


@dataclass(frozen=True, slots=True)
class SelectedItem:
    revenue_external_id: str
    amount: Decimal
    occurred_at: str | None

    def as_cart_item(self) -> CartItem:
        return CartItem(
            revenue_external_id=self.revenue_external_id,
            amount=format_amount(self.amount),
            occurred_at=self.occurred_at,
        )


def format_amount(v: Decimal | float) -> str:
    """Shortest decimal text: ``150``, ``150.5``, ``0.01``."""

    d = Decimal(str(v)).quantize(Decimal("0.01"))
    text = format(d, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def derived_mandate_id(kind: MandateKind, *parts: str) -> str:
    return f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, '|'.join([str(kind), *parts]))}"


def enforce_intent_constraints(intent: Mapping[str, Any], *, currency: str, total: Decimal) -> None:
    constraints = intent.get("constraints") or {}
    wanted = constraints.get("currency")
    if wanted and wanted != currency:
        raise ConstraintViolationError(f"Intent currency mismatch (want {wanted}, got {currency})")
    raw_max = constraints.get("max_amount")
    if raw_max is None:
        return
    try:
        cap = Decimal(str(raw_max))
    except InvalidOperation:
        return
    if cap.is_finite() and total > cap:
        raise ConstraintViolationError(f"Intent max_amount exceeded ({total} > {cap})")


class SettlementOrchestrator:
    def __init__(
        self,
        config: Config,
        collections: Collections,
        *,
        signing_key: Ed25519PrivateKey,
        resolve_public_key: PublicKeyResolver,
        journal: Journal | None = None,
        dedupe: DedupeStore | None = None,
        reputation: ReputationGate | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        ents = config.entities
        self.mandates = MandateStore(collections.get(ents.mandate.entity_name), ents.mandate)
        self.leases = WorkLease(collections.get(ents.lease.entity_name), ents.lease)
        self.payouts = PayoutRequestWriter(collections.get(ents.payout_request.entity_name), ents.payout_request)
        self.index = SettlementIndex(collections.get(ents.settlement_item.entity_name), ents.settlement_item)
        self.revenue = collections.get(ents.revenue.entity_name)
        self.rf = ents.revenue
        self.signing_key = signing_key
        self.resolve_public_key = resolve_public_key
        self.journal = journal
        self.dedupe = dedupe
        self.reputation = reputation or ReputationGate(config.posp)
        self._clock = clock

    # -----------------
    # Helpers
    # -----------------

    def _verify(self, envelope: Mapping[str, Any]) -> VerificationResult:
        return verify_mandate(
            envelope,
            now=self._clock(),
            clock_skew_ms=self.config.mandate.clock_skew_ms,
            resolve_public_key=self.resolve_public_key,
        )

    def _sign(self, payload: Mapping[str, Any]) -> tuple[dict[str, Any], VerificationResult]:
        env = sign_mandate(payload, kid=self.config.mandate.kid, private_key=self.signing_key)
        check = self._verify(env)
        if not check.ok:
            raise MandateError(f"{payload.get('type')} signing failed: {','.join(check.violations)}")
        return env, check

    async def _store(self, envelope: Mapping[str, Any], check: VerificationResult, dry_run: bool) -> CreateResult | None:
        if dry_run:
            self.mandates.build_data(envelope, verification=check, status=STATUS_VERIFIED)
            return None
        return await self.mandates.write(envelope, verification=check, status=STATUS_VERIFIED)

    def _record(self, result: SettlementResult, intent_id: str | None) -> SettlementResult:
        level = logging.INFO if result.ok else logging.WARNING
        logger.log(
            level,
            "settlement_result",
            extra={"intent_id": intent_id, "state": result.state, "reason": result.reason, "total": result.total},
        )
        if self.journal is not None and not result.dry_run:
            self.journal.append(
                event_type=JournalEventType.SETTLEMENT_RESULT_V1,
                payload={"intent_id": intent_id, **result.as_dict()},
                source="settlement.orchestrator",
            )
        return result

    def _advance(self, intent_id: str, state: SettlementState) -> None:
        logger.debug("settlement_state", extra={"intent_id": intent_id, "state": str(state)})

    async def select_items(self, currency: str) -> list[SelectedItem]:
        s = self.config.settlement
        rows: list[Record] = await self.revenue.list(sort="-created_date", limit=s.revenue_scan_limit)
        out: list[SelectedItem] = []
        for r in rows:
            try:
                amount = Decimal(str(r.get(self.rf.amount)))
            except InvalidOperation:
                continue
            if not amount.is_finite() or amount <= 0:
                continue
            if r.get(self.rf.currency) != currency:
                continue
            ext = r.get(self.rf.external_id)
            if not ext:
                continue
            if r.get(self.rf.status) == STATUS_HALLUCINATION:
                continue
            meta = r.get(self.rf.metadata)
            if reference_id(meta if isinstance(meta, Mapping) else None) is None:
                continue
            if s.use_settlement_index and await self.index.is_settled(str(ext)):
                continue
            out.append(SelectedItem(str(ext), amount, r.get(self.rf.occurred_at)))
        return out[: max(1, s.item_limit)]

    # -----------------
    # Orchestration
    # -----------------

    async def settle(
        self,
        intent_envelope: Mapping[str, Any],
        *,
        holder: str | None = None,
        dry_run: bool = False,
    ) -> SettlementResult:
        cfg = self.config
        parties = cfg.mandate.parties
        who = holder or cfg.agent_id

        verified = self._verify(intent_envelope)
        if not verified.ok:
            return self._record(
                SettlementResult(
                    ok=False, reason=SettlementReason.INVALID_INTENT, violations=verified.violations, dry_run=dry_run
                ),
                None,
            )

        intent = intent_envelope["payload"]
        if intent.get("type") != MandateKind.INTENT:
            raise MandateError(f"Intent mandate must have type={MandateKind.INTENT} (got {intent.get('type')})")
        intent_id = str(intent.get("id") or "")
        if not intent_id:
            raise MandateError("Intent mandate requires an id")

        self._advance(intent_id, SettlementState.INTENT_VERIFIED)
        lease_key = f"settlement:{intent_id}"
        if self.dedupe is not None and not dry_run and self.dedupe.is_recently_done(lease_key):
            return self._record(
                SettlementResult(ok=True, reason=SettlementReason.RECENTLY_SETTLED, dry_run=dry_run), intent_id
            )

        posp_info: dict[str, Any] = {}
        if cfg.posp.enabled:
            proof, check = self.reputation.evaluate(who, now=self._clock())
            if not check.ok:
                return self._record(
                    SettlementResult(
                        ok=False,
                        state=SettlementState.INTENT_VERIFIED,
                        reason=SettlementReason.POSP_INSUFFICIENT,
                        posp=check.as_dict(),
                        dry_run=dry_run,
                    ),
                    intent_id,
                )
            path = self.reputation.write(proof)
            posp_info = {"posp_proof_hash": proof.proof_hash, "posp_proof_file": str(path), "posp_score": proof.score}

        intent_write = await self._store(intent_envelope, verified, dry_run)
        intent_stored_id = intent_write.id if intent_write else None

        now = self._clock()
        if dry_run:
            lease = LeaseResult(
                acquired=True, id=None, expires_at=to_iso(plus_ms(now, cfg.settlement.lease_ttl_ms)), holder=who
            )
        else:
            lease = await self.leases.acquire(
                key=lease_key, holder=who, ttl_ms=cfg.settlement.lease_ttl_ms, meta={"intent_id": intent_id}, now=now
            )
        if not lease.acquired:
            return self._record(
                SettlementResult(
                    ok=True,
                    state=SettlementState.INTENT_VERIFIED,
                    reason=SettlementReason.LEASE_UNAVAILABLE,
                    lease=lease,
                    intent_stored_id=intent_stored_id,
                    dry_run=dry_run,
                ),
                intent_id,
            )

        self._advance(intent_id, SettlementState.LEASE_ACQUIRED)
        constraints = intent.get("constraints") or {}
        currency = str(constraints.get("currency") or "USD")
        items = await self.select_items(currency)
        if not items:
            return self._record(
                SettlementResult(
                    ok=True,
                    state=SettlementState.LEASE_ACQUIRED,
                    reason=SettlementReason.NO_ELIGIBLE_REVENUE,
                    acquired=True,
                    lease=lease,
                    intent_stored_id=intent_stored_id,
                    currency=currency,
                    dry_run=dry_run,
                ),
                intent_id,
            )

        self._advance(intent_id, SettlementState.ITEMS_SELECTED)
        total = sum((it.amount for it in items), Decimal("0")).quantize(Decimal("0.01"))
        enforce_intent_constraints(intent, currency=currency, total=total)
        total_text = format_amount(total)
        item_ids = [it.revenue_external_id for it in items]

        quote = QuotePayload(
            id=derived_mandate_id(MandateKind.QUOTE, intent_id, *item_ids),
            prev_hash=build_chain_hash(intent_envelope),
            iss=parties.agent,
            sub=parties.credential_provider,
            aud=parties.merchant,
            iat=to_iso(now),
            exp=to_iso(plus_ms(now, cfg.mandate.quote_ttl_ms)),
            intent_id=intent_id,
            cart=Cart(currency=currency, items=[it.as_cart_item() for it in items], total=total_text),
        ).to_payload()
        quote_env, quote_check = self._sign(quote)
        quote_write = await self._store(quote_env, quote_check, dry_run)
        self._advance(intent_id, SettlementState.QUOTE_SIGNED)

        payout_external_id = "settle_" + uuid.UUID(quote["id"].removeprefix("urn:uuid:")).hex
        payment_id = derived_mandate_id(MandateKind.PAYMENT, quote["id"])
        amount = float(total)
        destination = constraints.get("destination")
        action_data = {
            "source": cfg.settlement.payout_source,
            "status": STATUS_READY_FOR_REVIEW,
            "external_id": payout_external_id,
            "occurred_at": to_iso(now),
            "currency": currency,
            "amount": amount,
            "destination_summary": dict(cfg.settlement.destination),
            "metadata": {
                "intent_id": intent_id,
                "quote_id": quote["id"],
                "payment_mandate_id": payment_id,
                "intent_payload_hash": payload_hash(intent),
                "quote_payload_hash": payload_hash(quote),
            },
        }
        payment = PaymentPayload(
            id=payment_id,
            prev_hash=build_chain_hash(quote_env),
            iss=parties.credential_provider,
            sub=parties.merchant,
            aud=parties.processor,
            iat=to_iso(now),
            exp=to_iso(plus_ms(now, cfg.mandate.payment_ttl_ms)),
            intent_id=intent_id,
            quote_id=quote["id"],
            settlement=SettlementTerms(
                method=cfg.settlement.settlement_method,
                currency=currency,
                amount=total_text,
                destination_hash=payload_hash(destination) if destination else None,
            ),
            action=PayoutAction(
                kind=ACTION_KIND,
                entity=cfg.entities.payout_request.entity_name,
                idempotency_key=f"settle:{payout_external_id}",
                data=action_data,
            ),
        ).to_payload()
        payment_env, payment_check = self._sign(payment)
        payment_write = await self._store(payment_env, payment_check, dry_run)
        self._advance(intent_id, SettlementState.PAYMENT_SIGNED)

        request = PayoutRequest(
            amount=amount,
            currency=currency,
            status=STATUS_READY_FOR_REVIEW,
            source=cfg.settlement.payout_source,
            external_id=payout_external_id,
            occurred_at=to_iso(now),
            destination_summary=dict(cfg.settlement.destination),
            metadata={
                **action_data["metadata"],
                "payment_payload_hash": payload_hash(payment),
                "item_count": len(items),
                "items": [it.as_cart_item().model_dump(mode="json") for it in items[:PAYOUT_METADATA_ITEMS]],
                **posp_info,
            },
        )
        if dry_run:
            self.payouts.build_data(request)
            payout_write = None
        else:
            payout_write = await self.payouts.create(request)

        index_ids: list[str] = []
        if cfg.settlement.use_settlement_index and not dry_run:
            for it in items:
                w = await self.index.mark_settled(
                    it.revenue_external_id,
                    payment_mandate_id=payment_id,
                    amount=float(it.amount),
                    currency=currency,
                    occurred_at=it.occurred_at,
                    meta={"quote_id": quote["id"], "intent_id": intent_id},
                )
                index_ids.append(w.id)

        if self.dedupe is not None and not dry_run:
            self.dedupe.mark_done(lease_key)

        return self._record(
            SettlementResult(
                ok=True,
                state=SettlementState.PAYOUT_EMITTED,
                dry_run=dry_run,
                acquired=True,
                lease=lease,
                intent_stored_id=intent_stored_id,
                quote_stored_id=quote_write.id if quote_write else None,
                payment_stored_id=payment_write.id if payment_write else None,
                payout_created_id=payout_write.id if payout_write else None,
                payout_deduped=bool(payout_write and payout_write.deduped),
                payout_external_id=payout_external_id,
                settlement_index_ids=index_ids,
                total=amount,
                currency=currency,
            ),
            intent_id,
        )
