"""mandate_rail.core.exceptions

Errors are part of the interface.

Two kinds of failure live here: the ones a caller may retry and the ones
that must stop the workflow. Invariant failures are the second kind.
"""

from __future__ import annotations

from typing import Any


class MandateRailError(Exception):
    """Base exception for mandate_rail."""


class ConfigError(MandateRailError):
    """Configuration is missing, invalid, or inconsistent."""


class MandateError(MandateRailError):
    """A mandate could not be built or signed."""


class MissingKeyError(MandateError):
    """Key material for a kid is not available. Fails closed."""


class ConstraintViolationError(MandateError):
    """A quote or payment breaks the constraints of its intent."""


class InvariantViolationError(MandateRailError):
    """A hard invariant failed. The workflow must stop."""

    def __init__(self, invariant: str, message: str = "", **details: Any) -> None:
        self.invariant = invariant
        self.details = details
        text = f"INVARIANT_FAIL: {invariant}"
        if message:
            text = f"{text} - {message}"
        super().__init__(text)


class CompoundInvariantFailure(MandateRailError):
    """Several invariants failed in one pass."""

    def __init__(self, failures: list[InvariantViolationError]) -> None:
        self.failures = list(failures)
        names = ", ".join(f.invariant for f in self.failures)
        super().__init__(f"Multiple invariants failed: {len(self.failures)} ({names})")


class MoneyGateError(MandateRailError):
    """The money-moved gate refused an event before proof validation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"MONEY_GATE_FAIL: {reason}")


class StoreError(MandateRailError):
    """Record store failures."""


class RecordNotFoundError(StoreError):
    """Update targeted a record id that does not exist."""


class StoreUnavailableError(StoreError):
    """The remote record store cannot be reached."""


class ProcessorRequestError(MandateRailError):
    """Outbound HTTP request failed after retries, or failed non-retryably."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class CircuitOpenError(ProcessorRequestError):
    """The named circuit breaker is open."""


class JournalError(MandateRailError):
    """Journal failures: schema, IO, integrity."""


class DedupeConflictError(JournalError):
    """Deduplication key reused with different payload."""


class ChainVerificationError(MandateRailError):
    """An on-chain transfer could not be confirmed."""
