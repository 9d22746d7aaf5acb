from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from mandate_rail.core.time import to_iso
from mandate_rail.mandate.models import IntentConstraints, IntentPayload
from mandate_rail.mandate.signer import sign_mandate
from mandate_rail.records.revenue import RevenueEvent, RevenueLedger
from mandate_rail.store.base import Collections
from tests.conftest import TEST_KID

INTENT_ID = "urn:uuid:7d4c1a5e-0000-4000-8000-000000000001"


def signed_intent(
    key: Ed25519PrivateKey,
    *,
    now: datetime,
    max_amount: float = 500,
    currency: str = "USD",
    intent_id: str = INTENT_ID,
) -> dict[str, Any]:
    payload = IntentPayload(
        id=intent_id,
        iss="did:swarm:sa:orchestrator",
        sub="did:swarm:cp:base44",
        aud="did:swarm:me:base44",
        iat=to_iso(now),
        exp=to_iso(now + timedelta(hours=1)),
        constraints=IntentConstraints(currency=currency, max_amount=max_amount),
    ).to_payload()
    return sign_mandate(payload, kid=TEST_KID, private_key=key)


async def seed_revenue(collections: Collections, events: list[dict[str, Any]]) -> None:
    ledger = RevenueLedger(collections.get("RevenueEvent"))
    for ev in events:
        await ledger.ingest(RevenueEvent(**ev))


def paid(external_id: str, amount: float, currency: str = "USD") -> dict[str, Any]:
    return {
        "external_id": external_id,
        "amount": amount,
        "currency": currency,
        "occurred_at": "2026-03-01T10:00:00.000Z",
        "source": "paypal",
        "metadata": {"psp_transaction_id": f"PAY-{external_id}"},
    }
