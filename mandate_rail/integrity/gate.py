"""mandate_rail.integrity.gate

The money-moved gate.

The one call every settlement, reconciliation and reporting path makes
before treating money as moved. Returns the validated proof and the
evidence block it is bound to, or raises.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from mandate_rail.core.config import IntegrityConfig, RevenueEntity
from mandate_rail.core.exceptions import MoneyGateError
from mandate_rail.integrity.evidence import Block, EvidenceChain
from mandate_rail.integrity.invariants import STATUS_HALLUCINATION
from mandate_rail.integrity.proof import ProofValidator


@dataclass(frozen=True, slots=True)
class GatePass:
    event_id: str
    proof: dict[str, Any]
    block: Block


class MoneyMovedGate:
    def __init__(
        self,
        *,
        validator: ProofValidator,
        evidence: EvidenceChain,
        config: IntegrityConfig | None = None,
        revenue_fields: RevenueEntity | None = None,
    ) -> None:
        self.validator = validator
        self.evidence = evidence
        self.config = config or IntegrityConfig()
        self.f = revenue_fields or RevenueEntity()

    async def assert_money_moved(self, event: Mapping[str, Any] | None) -> GatePass:
        if event is None:
            raise MoneyGateError("event_missing")

        status = event.get(self.f.status)
        if status == STATUS_HALLUCINATION:
            raise MoneyGateError("hallucinated_event")
        if self.config.money_gate_reject_settled and event.get("settled") is True:
            raise MoneyGateError("already_settled")
        allowed = self.config.money_gate_allowed_statuses
        if allowed and status not in allowed:
            raise MoneyGateError(f"invalid_status ({status})")

        proof = await self.validator.assert_valid(event)
        event_id = str(event.get("id") or "")
        block = self.evidence.assert_event_bound(event_id)
        return GatePass(event_id=event_id, proof=proof, block=block)
