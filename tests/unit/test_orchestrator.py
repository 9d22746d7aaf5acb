from __future__ import annotations

import copy
import random
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from mandate_rail.concurrency.lease import WorkLease
from mandate_rail.core.config import Config
from mandate_rail.core.dedupe import DedupeStore
from mandate_rail.core.exceptions import ConstraintViolationError, MandateError
from mandate_rail.core.journal import Journal, JournalEventType
from mandate_rail.mandate.signer import sign_mandate, verify_chain_link
from mandate_rail.reputation.posp import calculate_posp, enforce_posp
from mandate_rail.settlement.orchestrator import (
    SettlementOrchestrator,
    SettlementReason,
    SettlementState,
    format_amount,
)
from mandate_rail.store.base import Collections
from mandate_rail.store.local import MemoryStore
from tests.conftest import TEST_KID
from tests.unit._mandate_factory import INTENT_ID, paid, seed_revenue, signed_intent

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _no_posp(cfg: Config, **settlement) -> Config:
    return cfg.model_copy(
        update={
            "posp": cfg.posp.model_copy(update={"enabled": False}),
            "settlement": cfg.settlement.model_copy(update=settlement),
        }
    )


def _orch(cfg, collections, key, resolver, **kw) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        cfg, collections, signing_key=key, resolve_public_key=resolver, clock=lambda: NOW, **kw
    )


@pytest.mark.anyio
async def test_settles_eligible_revenue_into_one_payout(
    test_config, memory_store: MemoryStore, collections: Collections, signing_key, resolver
) -> None:
    await seed_revenue(
        collections,
        [
            paid("r1", 150),
            paid("r2", 150),
            paid("r3", 99, currency="EUR"),
            {"external_id": "fake", "amount": 1000, "currency": "USD"},
        ],
    )
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)

    res = await orch.settle(signed_intent(signing_key, now=NOW))

    assert res.ok is True
    assert res.state is SettlementState.PAYOUT_EMITTED
    assert res.total == 300
    assert res.currency == "USD"
    assert res.payout_deduped is False
    assert len(res.settlement_index_ids) == 2

    [payout] = memory_store.records("PayoutRequest")
    assert payout["amount"] == 300
    assert payout["status"] == "READY_FOR_REVIEW"
    assert payout["external_id"] == res.payout_external_id
    assert {it["revenue_external_id"] for it in payout["metadata"]["items"]} == {"r1", "r2"}

    mandates = {m["type"]: m for m in memory_store.records("AP2Mandate")}
    assert set(mandates) == {"ap2.intent", "ap2.quote", "ap2.payment"}
    intent_env = {"payload": mandates["ap2.intent"]["payload"]}
    quote_env = {"payload": mandates["ap2.quote"]["payload"]}
    payment_env = {"payload": mandates["ap2.payment"]["payload"]}
    assert verify_chain_link(intent_env, quote_env) is True
    assert verify_chain_link(quote_env, payment_env) is True
    assert mandates["ap2.quote"]["payload"]["cart"]["total"] == "300"


@pytest.mark.anyio
async def test_settled_items_are_not_selected_again(test_config, collections, signing_key, resolver) -> None:
    await seed_revenue(collections, [paid("r1", 150), paid("r2", 150)])
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)
    intent = signed_intent(signing_key, now=NOW)

    await orch.settle(intent)
    again = await orch.settle(intent)

    assert again.ok is True
    assert again.reason is SettlementReason.NO_ELIGIBLE_REVENUE


@pytest.mark.anyio
async def test_rerun_without_index_dedupes_payout(
    test_config, memory_store: MemoryStore, collections, signing_key, resolver
) -> None:
    await seed_revenue(collections, [paid("r1", 150), paid("r2", 150)])
    orch = _orch(_no_posp(test_config, use_settlement_index=False), collections, signing_key, resolver)
    intent = signed_intent(signing_key, now=NOW)

    first = await orch.settle(intent)
    second = await orch.settle(intent)

    assert second.payout_deduped is True
    assert second.payout_created_id == first.payout_created_id
    assert second.payout_external_id == first.payout_external_id
    assert len(memory_store.records("PayoutRequest")) == 1
    assert len(memory_store.records("AP2Mandate")) == 3


@pytest.mark.anyio
async def test_max_amount_is_enforced(test_config, memory_store, collections, signing_key, resolver) -> None:
    await seed_revenue(collections, [paid("r1", 150), paid("r2", 150)])
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)

    with pytest.raises(ConstraintViolationError):
        await orch.settle(signed_intent(signing_key, now=NOW, max_amount=250))
    assert memory_store.records("PayoutRequest") == []


@pytest.mark.anyio
async def test_tampered_intent_is_rejected(test_config, memory_store, collections, signing_key, resolver) -> None:
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)
    intent = signed_intent(signing_key, now=NOW)
    bad = copy.deepcopy(intent)
    bad["payload"]["constraints"]["max_amount"] = 10_000

    res = await orch.settle(bad)
    assert res.ok is False
    assert res.reason is SettlementReason.INVALID_INTENT
    assert res.violations == ["bad_signature"]
    assert res.as_dict()["error"] == "invalid_intent"
    assert memory_store.records("AP2Mandate") == []


@pytest.mark.anyio
async def test_non_intent_type_raises(test_config, collections, signing_key: Ed25519PrivateKey, resolver) -> None:
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)
    env = signed_intent(signing_key, now=NOW)
    payload = {**env["payload"], "type": "ap2.quote"}

    with pytest.raises(MandateError):
        await orch.settle(sign_mandate(payload, kid=TEST_KID, private_key=signing_key))


@pytest.mark.anyio
async def test_lease_held_elsewhere_defers(test_config, collections, signing_key, resolver) -> None:
    await seed_revenue(collections, [paid("r1", 150)])
    await WorkLease(collections.get("WorkLease")).acquire(
        key=f"settlement:{INTENT_ID}", holder="other-worker", ttl_ms=600_000, now=NOW
    )
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)

    res = await orch.settle(signed_intent(signing_key, now=NOW), holder="me")
    assert res.ok is True
    assert res.reason is SettlementReason.LEASE_UNAVAILABLE
    assert res.lease is not None and res.lease.holder == "other-worker"


@pytest.mark.anyio
async def test_dry_run_writes_nothing(test_config, memory_store, collections, signing_key, resolver) -> None:
    await seed_revenue(collections, [paid("r1", 150), paid("r2", 150)])
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)

    res = await orch.settle(signed_intent(signing_key, now=NOW), dry_run=True)

    assert res.ok is True
    assert res.dry_run is True
    assert res.state is SettlementState.PAYOUT_EMITTED
    assert res.total == 300
    assert res.payout_created_id is None
    assert memory_store.records("AP2Mandate") == []
    assert memory_store.records("PayoutRequest") == []
    assert memory_store.records("WorkLease") == []


@pytest.mark.anyio
async def test_posp_gate_blocks_without_receipts(test_config, collections, signing_key, resolver) -> None:
    orch = _orch(test_config, collections, signing_key, resolver)

    res = await orch.settle(signed_intent(signing_key, now=NOW))
    assert res.ok is False
    assert res.reason is SettlementReason.POSP_INSUFFICIENT
    assert res.posp is not None and res.posp["score"] == 0


@pytest.mark.anyio
async def test_recently_settled_short_circuits_and_journals(
    test_config, temp_dir, collections, signing_key, resolver
) -> None:
    await seed_revenue(collections, [paid("r1", 150)])
    journal = Journal(temp_dir / "journal.db")
    dedupe = DedupeStore(temp_dir / "dedupe.json")
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver, journal=journal, dedupe=dedupe)
    intent = signed_intent(signing_key, now=NOW)

    await orch.settle(intent)
    again = await orch.settle(intent)

    assert again.reason is SettlementReason.RECENTLY_SETTLED
    results = journal.entries(event_type=JournalEventType.SETTLEMENT_RESULT_V1)
    assert len(results) == 2
    assert results[0].payload["reason"] == "recently_settled"
    journal.close()


def test_format_amount() -> None:
    assert format_amount(150) == "150"
    assert format_amount(150.5) == "150.5"
    assert format_amount(0.01) == "0.01"


@pytest.mark.anyio
async def test_unreferenced_pending_revenue_is_not_eligible(
    test_config, memory_store, collections, signing_key, resolver
) -> None:
    await seed_revenue(
        collections, [{"external_id": "p1", "amount": 100, "currency": "USD", "status": "pending", "metadata": {}}]
    )
    assert memory_store.records("RevenueEvent")[0]["status"] == "pending"
    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)

    res = await orch.settle(signed_intent(signing_key, now=NOW))
    assert res.ok is True
    assert res.reason is SettlementReason.NO_ELIGIBLE_REVENUE
    assert memory_store.records("PayoutRequest") == []


class _RecordingReputation:
    def __init__(self) -> None:
        self.agents: list[str] = []

    def evaluate(self, agent_id, now=None):
        self.agents.append(agent_id)
        proof = calculate_posp(agent_id=agent_id, receipts=[], now=now)
        return proof, enforce_posp(proof)


@pytest.mark.anyio
async def test_posp_is_scored_for_the_lease_holder(test_config, collections, signing_key, resolver) -> None:
    reputation = _RecordingReputation()
    orch = _orch(test_config, collections, signing_key, resolver, reputation=reputation)

    await orch.settle(signed_intent(signing_key, now=NOW), holder="worker-7")
    await orch.settle(signed_intent(signing_key, now=NOW))
    assert reputation.agents == ["worker-7", test_config.agent_id]


def _random_events(rng: random.Random) -> list[dict]:
    events = []
    for i in range(rng.randint(0, 12)):
        cents = rng.randint(1, 40_000)
        currency = rng.choice(["USD", "EUR"])
        kind = rng.choice(["psp", "psp", "bank", "pending", "bare"])
        ev = paid(f"x{i}", cents / 100, currency=currency)
        if kind == "bank":
            ev["metadata"] = {"bank_reference": f"BANK-{i}"}
        elif kind == "pending":
            ev.update(status="pending", metadata={})
        elif kind == "bare":
            ev["metadata"] = {}
        events.append(ev)
    return events


@pytest.mark.anyio
@pytest.mark.parametrize("seed", range(25))
async def test_random_ledgers_settle_within_intent(
    seed, test_config, memory_store, collections, signing_key, resolver
) -> None:
    rng = random.Random(seed)
    events = _random_events(rng)
    currency = rng.choice(["USD", "EUR"])
    max_amount = rng.randint(1, 1500)
    await seed_revenue(collections, events)

    eligible = {
        ev["external_id"]: Decimal(str(ev["amount"]))
        for ev in events
        if ev["currency"] == currency and ev["metadata"]
    }
    expected = sum(eligible.values(), Decimal("0")).quantize(Decimal("0.01"))

    orch = _orch(_no_posp(test_config), collections, signing_key, resolver)
    intent = signed_intent(signing_key, now=NOW, max_amount=max_amount, currency=currency)

    if expected > max_amount:
        with pytest.raises(ConstraintViolationError):
            await orch.settle(intent)
        assert memory_store.records("PayoutRequest") == []
        return

    res = await orch.settle(intent)
    if not eligible:
        assert res.reason is SettlementReason.NO_ELIGIBLE_REVENUE
        assert memory_store.records("PayoutRequest") == []
        return

    [payout] = memory_store.records("PayoutRequest")
    assert payout["amount"] == float(expected)
    assert payout["amount"] <= max_amount
    assert payout["currency"] == currency
    assert {it["revenue_external_id"] for it in payout["metadata"]["items"]} == set(eligible)
    assert sum(Decimal(it["amount"]) for it in payout["metadata"]["items"]) == expected

    again = await orch.settle(intent)
    assert again.reason is SettlementReason.NO_ELIGIBLE_REVENUE
    assert len(memory_store.records("PayoutRequest")) == 1
