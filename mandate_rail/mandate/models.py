"""mandate_rail.mandate.models

Mandate payloads and the signed envelope.

Payloads are built with these models and signed as plain dicts. On the
verifying side envelopes are treated as untrusted JSON: verification reads
raw mappings so that a malformed envelope yields violations, not a
validation exception.
"""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from mandate_rail import MANDATE_ALG, MANDATE_TYPE


class MandateKind(StrEnum):
    INTENT = "ap2.intent"
    QUOTE = "ap2.quote"
    PAYMENT = "ap2.payment"


def new_mandate_id() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


class _Payload(BaseModel):
    id: str = Field(default_factory=new_mandate_id)
    iss: str
    sub: str
    aud: str
    iat: str
    exp: str

    model_config = {"frozen": True, "extra": "allow"}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class IntentConstraints(BaseModel):
    currency: str
    max_amount: float
    route_preference: str | None = None
    destination: dict[str, Any] | None = None

    model_config = {"extra": "allow"}


class IntentPayload(_Payload):
    type: str = MandateKind.INTENT.value
    constraints: IntentConstraints


class CartItem(BaseModel):
    revenue_external_id: str
    amount: str
    occurred_at: str | None = None


class Cart(BaseModel):
    currency: str
    items: list[CartItem]
    total: str


class QuotePayload(_Payload):
    type: str = MandateKind.QUOTE.value
    prev_hash: str
    intent_id: str
    cart: Cart


class SettlementTerms(BaseModel):
    method: str
    currency: str
    amount: str
    destination_hash: str | None = None


class PayoutAction(BaseModel):
    kind: str
    entity: str
    idempotency_key: str
    data: dict[str, Any]


class PaymentPayload(_Payload):
    type: str = MandateKind.PAYMENT.value
    prev_hash: str
    intent_id: str
    quote_id: str
    settlement: SettlementTerms
    action: PayoutAction


class ProtectedHeader(BaseModel):
    v: int = 1
    typ: str = MANDATE_TYPE
    alg: str = MANDATE_ALG
    kid: str

    model_config = {"extra": "allow"}


class MandateEnvelope(BaseModel):
    """Wire + storage format."""

    protected: ProtectedHeader
    payload: dict[str, Any]
    signature: str

    model_config = {"populate_by_name": True}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
