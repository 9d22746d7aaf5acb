"""mandate_rail.concurrency.circuit_breaker

Named circuit breakers for outbound dependencies.

    CLOSED --N failures within window--> OPEN
    OPEN --reset timeout elapsed--> HALF_OPEN (one trial call at a time)
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN

One breaker per external dependency, constructed once and injected.
State is only touched from the owning event loop.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeVar

from mandate_rail.core.config import ProcessorConfig
from mandate_rail.core.exceptions import CircuitOpenError

T = TypeVar("T")


class BreakerState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True)
class CircuitBreaker:
    """Consecutive-failure breaker with a rolling window.

    Failures older than ``window_s`` do not count toward the threshold.
    """

    name: str
    failure_threshold: int = 5
    reset_timeout_s: float = 60.0
    window_s: float = 60.0
    clock: Callable[[], float] = time.monotonic

    state: BreakerState = BreakerState.CLOSED
    opened_at: float | None = None
    _failures: deque[float] = field(default_factory=deque)
    _trial_in_flight: bool = False

    def _now(self, now: float | None) -> float:
        return self.clock() if now is None else float(now)

    @property
    def failures(self) -> int:
        return len(self._failures)

    def current_state(self, *, now: float | None = None) -> BreakerState:
        n = self._now(now)
        if (
            self.state is BreakerState.OPEN
            and self.opened_at is not None
            and n - self.opened_at >= self.reset_timeout_s
        ):
            self.state = BreakerState.HALF_OPEN
        return self.state

    def can_call(self, *, now: float | None = None) -> bool:
        return self.current_state(now=now) is not BreakerState.OPEN

    def retry_after_s(self, *, now: float | None = None) -> float:
        if self.state is not BreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout_s - (self._now(now) - self.opened_at))

    def record_success(self) -> None:
        self._failures.clear()
        self.state = BreakerState.CLOSED
        self.opened_at = None

    def record_failure(self, *, now: float | None = None) -> None:
        n = self._now(now)
        if self.current_state(now=n) is BreakerState.HALF_OPEN:
            self._trip(n)
            return

        self._failures.append(n)
        cutoff = n - self.window_s
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._trip(n)

    def _trip(self, now: float) -> None:
        self.state = BreakerState.OPEN
        self.opened_at = now

    def check(self) -> None:
        """Raise CircuitOpenError if calls are not allowed right now."""

        if not self.can_call():
            raise CircuitOpenError(
                f"{self.name}: circuit open for {self.retry_after_s():.2f}s",
            )

    def _admit(self) -> bool:
        """Check, then claim the half-open trial slot. True if this call holds it."""

        self.check()
        if self.state is not BreakerState.HALF_OPEN:
            return False
        if self._trial_in_flight:
            raise CircuitOpenError(f"{self.name}: half-open trial in flight")
        self._trial_in_flight = True
        return True

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn`` if allowed, else raise CircuitOpenError."""

        trial = self._admit()
        try:
            out = await fn()
        except Exception:
            self.record_failure()
            raise
        finally:
            if trial:
                self._trial_in_flight = False
        self.record_success()
        return out


class BreakerRegistry:
    """Explicit home for every breaker in the process."""

    def __init__(self, *, defaults: ProcessorConfig | None = None) -> None:
        self._defaults = defaults or ProcessorConfig()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        br = self._breakers.get(name)
        if br is None:
            br = CircuitBreaker(
                name=name,
                failure_threshold=self._defaults.breaker_failure_threshold,
                reset_timeout_s=self._defaults.breaker_reset_timeout_ms / 1000.0,
                window_s=self._defaults.breaker_window_ms / 1000.0,
            )
            self._breakers[name] = br
        return br

    def snapshot(self) -> dict[str, str]:
        return {name: str(br.current_state()) for name, br in self._breakers.items()}
