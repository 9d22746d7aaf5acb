"""mandate_rail.records.mandates

Signed mandates, stored once.

Dedupe key is the mandate id; a payload without an id falls back to its
payload hash.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from mandate_rail.concurrency.idempotent import CreateResult, create_idempotent
from mandate_rail.core.codec import payload_hash
from mandate_rail.core.config import MandateEntity
from mandate_rail.core.exceptions import MandateError
from mandate_rail.mandate.signer import VerificationResult
from mandate_rail.store.base import Collection, Record

STATUS_VERIFIED = "VERIFIED"
STATUS_REJECTED = "REJECTED"


class MandateStore:
    def __init__(self, collection: Collection, fields: MandateEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or MandateEntity()

    def build_data(
        self,
        envelope: Mapping[str, Any],
        *,
        verification: VerificationResult | None = None,
        status: str | None = None,
    ) -> Record:
        payload = envelope.get("payload")
        header = envelope.get("protected")
        signature = envelope.get("signature")
        if not isinstance(payload, Mapping):
            raise MandateError("Mandate payload is required")
        if not isinstance(header, Mapping):
            raise MandateError("Mandate protected header is required")
        if not isinstance(signature, str) or not signature:
            raise MandateError("Mandate signature is required")

        f = self.f
        data: Record = {
            f.type: payload.get("type"),
            f.mandate_id: payload.get("id"),
            f.payload: dict(payload),
            f.payload_hash: payload_hash(payload),
            f.signature: signature,
            f.kid: header.get("kid"),
            f.iss: payload.get("iss"),
            f.sub: payload.get("sub"),
            f.aud: payload.get("aud"),
            f.iat: payload.get("iat"),
            f.exp: payload.get("exp"),
            f.prev_hash: payload.get("prev_hash"),
        }
        if status is not None:
            data[f.status] = status
        if verification is not None:
            data[f.verification] = verification.as_dict()
        return data

    async def write(
        self,
        envelope: Mapping[str, Any],
        *,
        verification: VerificationResult | None = None,
        status: str | None = None,
    ) -> CreateResult:
        data = self.build_data(envelope, verification=verification, status=status)
        mandate_id = data[self.f.mandate_id]
        dedupe = {self.f.mandate_id: mandate_id} if mandate_id else {self.f.payload_hash: data[self.f.payload_hash]}
        return await create_idempotent(self.collection, dedupe=dedupe, data=data)

    async def get(self, mandate_id: str) -> Record | None:
        return await self.collection.find_one({self.f.mandate_id: mandate_id})
