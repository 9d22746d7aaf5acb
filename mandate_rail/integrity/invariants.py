"""mandate_rail.integrity.invariants

Named invariant breakers.

Trip once, stay tripped. There is no reset short of a process restart.
Every trip is journaled and announced to trip listeners, which is how the
control loop learns it has to stop.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NoReturn

from mandate_rail.core.config import IntegrityConfig, RevenueEntity
from mandate_rail.core.exceptions import CompoundInvariantFailure, InvariantViolationError
from mandate_rail.core.journal import Journal, JournalEventType
from mandate_rail.core.time import to_iso, try_parse_dt, utc_now

logger = logging.getLogger(__name__)

TripListener = Callable[[str, InvariantViolationError], None]

STATUS_HALLUCINATION = "hallucination"
STATUS_VERIFIED = "VERIFIED"


@dataclass(frozen=True, slots=True)
class TrippedBreaker:
    name: str
    tripped_at: str
    message: str
    reset_policy: str = "REQUIRES_RESTART"

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tripped": True,
            "tripped_at": self.tripped_at,
            "message": self.message,
            "reset_policy": self.reset_policy,
        }


def event_proof(event: Mapping[str, Any]) -> Mapping[str, Any] | None:
    proof = event.get("verification_proof")
    if not proof:
        meta = event.get("metadata")
        proof = meta.get("verification_proof") if isinstance(meta, Mapping) else None
    return proof if isinstance(proof, Mapping) and proof else None


class InvariantCore:
    def __init__(
        self,
        *,
        journal: Journal | None = None,
        config: IntegrityConfig | None = None,
        revenue_fields: RevenueEntity | None = None,
        verified_statuses: Sequence[str] = (STATUS_VERIFIED,),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.journal = journal
        self.config = config or IntegrityConfig()
        self.f = revenue_fields or RevenueEntity()
        self.verified_statuses = tuple(verified_statuses)
        self._clock = clock
        self._tripped: dict[str, TrippedBreaker] = {}
        self._listeners: list[TripListener] = []

    def add_trip_listener(self, listener: TripListener) -> None:
        self._listeners.append(listener)

    def get_tripped_breakers(self) -> list[TrippedBreaker]:
        return list(self._tripped.values())

    def is_tripped(self, name: str | None = None) -> bool:
        if name is None:
            return bool(self._tripped)
        return name in self._tripped

    def fail(self, name: str, message: str = "", **details: Any) -> NoReturn:
        """Trip ``name``, record the failure, raise."""

        err = InvariantViolationError(name, message, **details)
        ts = to_iso(self._clock())
        if name not in self._tripped:
            self._tripped[name] = TrippedBreaker(name=name, tripped_at=ts, message=str(err))

        logger.error("invariant_failure", extra={"invariant": name, "detail": message})
        if self.journal is not None:
            self.journal.append(
                event_type=JournalEventType.INVARIANT_FAILURE_V1,
                payload={"invariant": name, "message": message, "details": details, "at": ts},
                source="integrity.invariants",
            )

        for listener in list(self._listeners):
            try:
                listener(name, err)
            except Exception:
                logger.exception("invariant_trip_listener_failed", extra={"invariant": name})
        raise err

    def assert_invariant(self, name: str, condition: Any, message: str = "", **details: Any) -> None:
        if not condition:
            self.fail(name, message, **details)

    def _checks(self, event: Mapping[str, Any]) -> list[tuple[str, Callable[[], Any]]]:
        proof = event_proof(event) or {}

        def _temporal() -> bool:
            pt = try_parse_dt(proof.get("timestamp"))
            et = try_parse_dt(event.get(self.f.occurred_at) or event.get("created_date"))
            return pt is not None and et is not None and pt >= et

        amount = proof.get("amount")
        checks: list[tuple[str, Callable[[], Any]]] = [
            ("hallucination_check", lambda: event.get(self.f.status) != STATUS_HALLUCINATION),
            ("proof_missing", lambda: bool(proof)),
            ("proof_type", lambda: proof.get("type")),
            ("psp_id", lambda: proof.get("psp_id") or proof.get("tx_hash")),
            ("amount_valid", lambda: isinstance(amount, (int, float)) and not isinstance(amount, bool)),
            ("currency", lambda: proof.get("currency")),
            ("proof_timestamp", lambda: proof.get("timestamp")),
        ]
        if self.config.enforce_temporal_order:
            checks.append(("temporal_order", _temporal))
        checks.append(("not_settled", lambda: event.get("settled") is not True))
        if self.verified_statuses:
            checks.append(("status_verified", lambda: event.get(self.f.status) in self.verified_statuses))
        return checks

    def assert_all_invariants(self, event: Mapping[str, Any] | None) -> None:
        """Run the whole battery, then raise once with every failure."""

        failures: list[InvariantViolationError] = []
        if event is None:
            try:
                self.fail("event_missing", "no event")
            except InvariantViolationError as e:
                failures.append(e)
            raise CompoundInvariantFailure(failures)

        label = f"Event {event.get('id')}"
        for name, check in self._checks(event):
            try:
                self.assert_invariant(name, check(), label)
            except InvariantViolationError as e:
                failures.append(e)

        if failures:
            raise CompoundInvariantFailure(failures)
