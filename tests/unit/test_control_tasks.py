from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from mandate_rail.control.tasks import (
    ControlTasks,
    is_within_window_utc,
    make_batch_id,
    make_item_id,
    normalize_recipient_type,
)
from mandate_rail.core.config import Config, PayoutWindowConfig
from mandate_rail.core.exceptions import InvariantViolationError, ProcessorRequestError
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.integrity.evidence import EvidenceChain
from mandate_rail.integrity.gate import MoneyMovedGate
from mandate_rail.integrity.invariants import InvariantCore
from mandate_rail.integrity.proof import ProofValidator, RecordWebhookLookup
from mandate_rail.processor.paypal import InMemoryPayoutProcessor
from mandate_rail.records.earnings import Earning, EarningWriter
from mandate_rail.store.base import Collections
from mandate_rail.store.local import MemoryStore
from tests.unit._mandate_factory import paid, seed_revenue


def _later() -> datetime:
    # Store stamps created_date with the wall clock; run tasks a few hours ahead of it.
    return utc_now() + timedelta(hours=3)


def _cfg(c: Config, *, dry_run: bool = False, require_processor_health: bool = False, **auto_approve) -> Config:
    auto = c.autonomous
    payout = auto.payout.model_copy(
        update={
            "dry_run": dry_run,
            "auto_approve": auto.payout.auto_approve.model_copy(
                update={"enabled": True, "pending_age_minutes": 60, **auto_approve}
            ),
        }
    )
    return c.model_copy(
        update={
            "autonomous": auto.model_copy(
                update={"payout": payout, "require_processor_health": require_processor_health}
            )
        }
    )


async def _seed_earnings(collections: Collections) -> None:
    w = EarningWriter(collections.get("Earning"))
    await w.create(Earning(earning_id="E1", amount=100, beneficiary="bob", metadata={"recipient_type": "paypal_email", "paypal_email": "bob@example.com"}))
    await w.create(Earning(earning_id="E2", amount=200, beneficiary="bob", metadata={"recipient_type": "paypal", "paypal_email": "bob@example.com"}))
    await w.create(Earning(earning_id="E3", amount=50, beneficiary="carol@example.com"))
    await w.create(Earning(earning_id="E4", amount=999, beneficiary="dave@example.com", status="paid"))


def test_window_wraps_midnight() -> None:
    at = lambda h: datetime(2026, 3, 1, h, tzinfo=UTC)  # noqa: E731

    always = PayoutWindowConfig(start_hour_utc=0, end_hour_utc=0)
    assert is_within_window_utc(always, at(13)) is True

    day = PayoutWindowConfig(start_hour_utc=9, end_hour_utc=17)
    assert is_within_window_utc(day, at(9)) is True
    assert is_within_window_utc(day, at(17)) is False

    night = PayoutWindowConfig(start_hour_utc=22, end_hour_utc=6)
    assert is_within_window_utc(night, at(23)) is True
    assert is_within_window_utc(night, at(3)) is True
    assert is_within_window_utc(night, at(12)) is False


def test_ids_are_deterministic() -> None:
    a = make_batch_id(
        settlement_id=None, beneficiary="bob", recipient_type="paypal", currency="USD", earning_ids=["E2", "E1"], day="20260301"
    )
    b = make_batch_id(
        settlement_id=None, beneficiary="bob", recipient_type="paypal", currency="USD", earning_ids=["E1", "E2"], day="20260301"
    )
    assert a == b
    assert a.startswith("PAYBATCH-20260301-") and len(a.rsplit("-", 1)[1]) == 10

    item = make_item_id(batch_id=a, earning_id="E1", day="20260301")
    assert item.startswith("PAYITEM-20260301-") and len(item.rsplit("-", 1)[1]) == 12


def test_recipient_type_aliases() -> None:
    assert normalize_recipient_type(None) == "beneficiary"
    assert normalize_recipient_type("PayPal_Email") == "paypal"
    assert normalize_recipient_type("bank") == "bank_wire"


@pytest.mark.anyio
async def test_available_balance(test_config, collections: Collections) -> None:
    rev = collections.get("RevenueEvent")
    await rev.create({"event_id": "a", "amount": 1000, "status": "confirmed"})
    await rev.create({"event_id": "b", "amount": 100, "status": "paid_out"})
    await rev.create({"event_id": "c", "amount": 5000, "status": "hallucination"})
    await collections.get("PayoutBatch").create({"batch_id": "B1", "status": "approved"})
    await collections.get("PayoutBatch").create({"batch_id": "B2", "status": "completed"})
    items = collections.get("PayoutItem")
    await items.create({"batch_id": "B1", "amount": 150, "status": "pending"})
    await items.create({"batch_id": "B1", "amount": 50, "status": "cancelled"})
    await items.create({"batch_id": "B2", "amount": 75, "status": "completed"})

    out = await ControlTasks(test_config, collections).available_balance()

    assert out == {
        "ok": True,
        "totalConfirmedRevenue": 1000,
        "totalPaidOut": 100,
        "totalCommittedToPayouts": 150,
        "availableBalance": 750,
    }


@pytest.mark.anyio
async def test_create_batches_groups_and_is_idempotent(
    test_config, memory_store: MemoryStore, collections: Collections
) -> None:
    await _seed_earnings(collections)
    tasks = ControlTasks(_cfg(test_config), collections, clock=_later)

    out = await tasks.create_payout_batches(balance={"ok": True, "availableBalance": 1000})

    assert out["ok"] is True
    by_type = {b["recipientType"]: b for b in out["batches"]}
    assert set(by_type) == {"paypal", "beneficiary"}
    assert by_type["paypal"]["totalAmount"] == 300
    assert by_type["paypal"]["itemCount"] == 2
    assert by_type["beneficiary"]["totalAmount"] == 50

    batches = memory_store.records("PayoutBatch")
    assert {b["status"] for b in batches} == {"pending_approval"}
    items = memory_store.records("PayoutItem")
    assert {it["recipient"] for it in items} == {"bob@example.com", "carol@example.com"}
    assert {it["earning_id"] for it in items} == {"E1", "E2", "E3"}

    again = await tasks.create_payout_batches(balance={"ok": True, "availableBalance": 1000})
    assert again["batches"] == []
    assert len(memory_store.records("PayoutBatch")) == 2


@pytest.mark.anyio
async def test_create_batches_skips(test_config, memory_store: MemoryStore, collections: Collections) -> None:
    await _seed_earnings(collections)

    dry = ControlTasks(_cfg(test_config, dry_run=True), collections, clock=_later)
    out = await dry.create_payout_batches(balance={"ok": True, "availableBalance": 1000})
    assert all(b["created"] is False for b in out["batches"])
    assert memory_store.records("PayoutBatch") == []

    cfg = _cfg(test_config)
    cfg.autonomous.payout.min_available_balance = 500
    low = await ControlTasks(cfg, collections, clock=_later).create_payout_batches(
        balance={"ok": True, "availableBalance": 10}
    )
    assert low["reason"] == "below_min_available_balance"


@pytest.mark.anyio
async def test_missing_recipient_skips_batch(test_config, memory_store: MemoryStore, collections: Collections) -> None:
    await EarningWriter(collections.get("Earning")).create(
        Earning(earning_id="W1", amount=10, metadata={"recipient_type": "bank"})
    )
    out = await ControlTasks(_cfg(test_config), collections, clock=_later).create_payout_batches(
        balance={"ok": True, "availableBalance": 1000}
    )

    [batch] = out["batches"]
    assert batch["reason"] == "missing_recipient"
    assert batch["missingRecipientEarningIds"] == ["W1"]
    assert memory_store.records("PayoutBatch") == []


@pytest.mark.anyio
async def test_auto_approve_routes_large_batches_to_review(test_config, memory_store, collections) -> None:
    batches = collections.get("PayoutBatch")
    await batches.create({"batch_id": "SMALL", "status": "pending_approval", "total_amount": 300})
    await batches.create({"batch_id": "BIG", "status": "pending_approval", "total_amount": 600})
    await batches.create({"batch_id": "NOAMOUNT", "status": "pending_approval"})

    tasks = ControlTasks(_cfg(test_config), collections, clock=_later)
    out = await tasks.auto_approve()

    assert out["approvedCount"] == 1
    assert out["ok"] is False
    reasons = {r["batchId"]: r["reason"] for r in out["needsReview"]}
    assert reasons == {"BIG": "above_2fa_threshold", "NOAMOUNT": "missing_amount"}
    status = {b["batch_id"]: b["status"] for b in memory_store.records("PayoutBatch")}
    assert status["SMALL"] == "approved"
    assert status["BIG"] == "pending_approval"


@pytest.mark.anyio
async def test_auto_approve_waits_for_age_and_respects_max(test_config, collections) -> None:
    await collections.get("PayoutBatch").create({"batch_id": "B", "status": "pending_approval", "total_amount": 300})

    young = await ControlTasks(_cfg(test_config), collections).auto_approve()
    assert young["attemptedCount"] == 0
    assert young["ok"] is True

    capped = await ControlTasks(_cfg(test_config, max_batch_amount=100), collections, clock=_later).auto_approve()
    assert capped["needsReview"][0]["reason"] == "amount_above_max"


@pytest.mark.anyio
async def test_submit_and_reconcile(test_config, memory_store: MemoryStore, collections: Collections) -> None:
    await _seed_earnings(collections)
    proc = InMemoryPayoutProcessor()
    tasks = ControlTasks(_cfg(test_config), collections, processor=proc, clock=_later)

    await tasks.create_payout_batches(balance={"ok": True, "availableBalance": 1000})
    approved = await tasks.auto_approve()
    assert approved["approvedCount"] == 2

    submitted = await tasks.submit_approved_batches()
    assert submitted["ok"] is True
    assert submitted["attemptedCount"] == 2
    assert len(proc.batches) == 2
    for b in memory_store.records("PayoutBatch"):
        assert b["status"] == "submitted_to_paypal"
        assert b["notes"]["paypal_payout_batch_id"] in proc.batches
    assert {it["status"] for it in memory_store.records("PayoutItem")} == {"processing"}

    # already submitted batches are not sent twice
    assert (await tasks.submit_approved_batches())["attemptedCount"] == 0

    first, second = list(proc.batches)
    proc.set_status(first, "SUCCESS")
    proc.set_status(second, "DENIED")
    rec = await tasks.reconcile_batches()
    assert rec["syncedCount"] == 2

    by_provider = {b["notes"]["paypal_payout_batch_id"]: b for b in memory_store.records("PayoutBatch")}
    assert by_provider[first]["status"] == "completed"
    assert by_provider[first]["processed_at"]
    assert by_provider[second]["status"] == "failed"
    item_status = {it["batch_id"]: it["status"] for it in memory_store.records("PayoutItem")}
    assert item_status[by_provider[first]["batch_id"]] == "completed"


@pytest.mark.anyio
async def test_submit_skip_reasons(test_config, collections) -> None:
    at = _later()
    cfg = _cfg(test_config)
    cfg.autonomous.payout.window_utc = PayoutWindowConfig(start_hour_utc=(at.hour + 1) % 24, end_hour_utc=(at.hour + 2) % 24)
    out = await ControlTasks(cfg, collections, processor=InMemoryPayoutProcessor(), clock=lambda: at).submit_approved_batches()
    assert out["reason"] == "outside_payout_window_utc"

    tasks = ControlTasks(_cfg(test_config), collections, processor=InMemoryPayoutProcessor())
    assert (await tasks.submit_approved_batches({"processorOk": False}))["reason"] == "processor_unhealthy"

    dry = ControlTasks(_cfg(test_config, dry_run=True), collections, processor=InMemoryPayoutProcessor())
    assert (await dry.submit_approved_batches())["reason"] == "payout_dry_run_enabled"

    none = ControlTasks(_cfg(test_config), collections)
    assert (await none.submit_approved_batches())["reason"] == "processor_not_configured"


@pytest.mark.anyio
async def test_submit_batch_without_processor_raises(test_config, collections) -> None:
    tasks = ControlTasks(_cfg(test_config), collections)
    with pytest.raises(ProcessorRequestError, match="processor_not_configured"):
        await tasks._submit_batch({"batch_id": "PAYBATCH-X"}, {})


@pytest.mark.anyio
async def test_health_reports_processor_and_store(test_config, collections) -> None:
    cfg = _cfg(test_config, require_processor_health=True)

    healthy = await ControlTasks(cfg, collections, processor=InMemoryPayoutProcessor()).check_health()
    assert healthy["ok"] is True
    assert healthy["details"]["storeMode"] == "memory"

    sick = await ControlTasks(cfg, collections, processor=InMemoryPayoutProcessor(healthy=False)).check_health()
    assert sick["ok"] is False
    assert sick["processorOk"] is False
    assert sick["storeOk"] is True

    missing = await ControlTasks(cfg, collections).check_health()
    assert missing["details"]["processor"] == "not_configured"


@pytest.mark.anyio
async def test_stuck_payouts(test_config, collections) -> None:
    now = _later()
    await collections.get("PayoutBatch").create(
        {"batch_id": "OLD", "status": "approved", "approved_at": to_iso(now - timedelta(hours=30)), "total_amount": 5}
    )
    await collections.get("PayoutBatch").create({"batch_id": "DONE", "status": "completed"})

    out = await ControlTasks(test_config, collections, clock=lambda: now).stuck_payouts()
    assert [b["batchId"] for b in out["stuckBatches"]] == ["OLD"]
    assert out["stuckBatches"][0]["ageHours"] == 30.0


def _gate(cfg: Config, collections: Collections, temp_dir) -> tuple[MoneyMovedGate, InvariantCore]:
    core = InvariantCore(config=cfg.integrity)
    validator = ProofValidator(
        invariants=core,
        webhooks=RecordWebhookLookup(collections.get("PayPalWebhookEvent")),
        config=cfg.integrity,
    )
    evidence = EvidenceChain(temp_dir / "evidence.json", invariants=core)
    return MoneyMovedGate(validator=validator, evidence=evidence, config=cfg.integrity), core


async def _linked_earning(collections: Collections, external_id: str, amount: float = 100, **event) -> str:
    await seed_revenue(collections, [{**paid(external_id, amount), **event}])
    rev = await collections.get("RevenueEvent").find_one({"event_id": external_id})
    await EarningWriter(collections.get("Earning")).create(
        Earning(
            earning_id=f"E-{external_id}",
            amount=amount,
            beneficiary="bob",
            metadata={"recipient_type": "paypal", "paypal_email": "bob@example.com", "revenue_event_id": rev["id"]},
        )
    )
    return str(rev["id"])


async def _submitted(tasks: ControlTasks, proc: InMemoryPayoutProcessor) -> str:
    await tasks.create_payout_batches(balance={"ok": True, "availableBalance": 1000})
    await tasks.auto_approve()
    await tasks.submit_approved_batches()
    [provider_id] = list(proc.batches)
    return provider_id


@pytest.mark.anyio
async def test_reconcile_pays_out_revenue_only_after_gate(test_config, memory_store, collections, temp_dir) -> None:
    rev_id = await _linked_earning(collections, "r1")
    await collections.get("PayPalWebhookEvent").create({"resource_id": "PAY-r1", "event_type": "PAYMENT.CAPTURE.COMPLETED"})
    gate, core = _gate(test_config, collections, temp_dir)
    proc = InMemoryPayoutProcessor()
    tasks = ControlTasks(_cfg(test_config), collections, processor=proc, money_gate=gate, clock=_later)

    provider_id = await _submitted(tasks, proc)
    [item] = memory_store.records("PayoutItem")
    assert item["revenue_event_id"] == rev_id

    proc.set_status(provider_id, "SUCCESS")
    rec = await tasks.reconcile_batches()
    assert rec["ok"] is True
    assert rec["revenue"][0]["status"] == "paid_out"

    [event] = memory_store.records("RevenueEvent")
    assert event["status"] == "paid_out"
    assert event["metadata"]["money_moved_gate_passed"] is True
    assert event["metadata"]["verification_proof"]["psp_id"] == "PAY-r1"
    assert event["metadata"]["verification_proof"]["payout_transaction_id"].startswith("TX-")

    block = gate.evidence.block_for(rev_id)
    assert (temp_dir / "evidence.json").exists()
    assert block is not None
    assert event["metadata"]["evidence_hash"] == block["hash"]
    assert core.is_tripped() is False

    # closed batches are not reconciled again
    again = await tasks.reconcile_batches()
    assert again["syncedCount"] == 0
    assert len(gate.evidence.blocks()) == 1


@pytest.mark.anyio
async def test_reconcile_unconfirmed_reference_fails_revenue_and_latches(
    test_config, memory_store, collections, temp_dir
) -> None:
    await _linked_earning(collections, "r1")
    gate, core = _gate(test_config, collections, temp_dir)
    proc = InMemoryPayoutProcessor()
    tasks = ControlTasks(_cfg(test_config), collections, processor=proc, money_gate=gate, clock=_later)

    proc.set_status(await _submitted(tasks, proc), "SUCCESS")
    with pytest.raises(InvariantViolationError) as ei:
        await tasks.reconcile_batches()
    assert ei.value.invariant == "psp_confirmation_missing"
    assert core.is_tripped("psp_confirmation_missing")

    [event] = memory_store.records("RevenueEvent")
    assert event["status"] == "payout_failed"
    [batch] = memory_store.records("PayoutBatch")
    assert batch["status"] == "submitted_to_paypal"


@pytest.mark.anyio
async def test_reconcile_refused_event_is_reported(test_config, memory_store, collections, temp_dir) -> None:
    # no reference: ingested as a hallucination
    await _linked_earning(collections, "r1", metadata={})
    gate, core = _gate(test_config, collections, temp_dir)
    proc = InMemoryPayoutProcessor()
    tasks = ControlTasks(_cfg(test_config), collections, processor=proc, money_gate=gate, clock=_later)

    proc.set_status(await _submitted(tasks, proc), "SUCCESS")
    rec = await tasks.reconcile_batches()
    assert rec["ok"] is False
    assert rec["failures"][0]["error"] == "MONEY_GATE_FAIL: hallucinated_event"
    assert memory_store.records("RevenueEvent")[0]["status"] == "payout_failed"
    assert memory_store.records("PayoutBatch")[0]["status"] == "completed"
    assert core.is_tripped() is False


@pytest.mark.anyio
async def test_reconcile_denied_batch_and_missing_gate(test_config, memory_store, collections, temp_dir) -> None:
    await _linked_earning(collections, "r1")
    proc = InMemoryPayoutProcessor()
    ungated = ControlTasks(_cfg(test_config), collections, processor=proc, clock=_later)

    proc.set_status(await _submitted(ungated, proc), "SUCCESS")
    rec = await ungated.reconcile_batches()
    assert rec["ok"] is False
    assert rec["revenue"][0]["error"] == "money_gate_not_configured"
    assert memory_store.records("RevenueEvent")[0].get("status") is None

    denied_store = MemoryStore()
    denied_cols = Collections(denied_store, test_config.entities)
    await _linked_earning(denied_cols, "r2")
    gate, _ = _gate(test_config, denied_cols, temp_dir)
    proc2 = InMemoryPayoutProcessor()
    tasks = ControlTasks(_cfg(test_config), denied_cols, processor=proc2, money_gate=gate, clock=_later)

    proc2.set_status(await _submitted(tasks, proc2), "DENIED")
    rec2 = await tasks.reconcile_batches()
    assert rec2["revenue"][0]["status"] == "payout_failed"
    assert denied_store.records("RevenueEvent")[0]["status"] == "payout_failed"
    assert gate.evidence.blocks() == []
