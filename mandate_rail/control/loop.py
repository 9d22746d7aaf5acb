"""mandate_rail.control.loop

The autonomous control loop.

One tick runs the enabled tasks in a fixed order:
health -> balance -> reporting -> batch creation -> approval -> submission
-> reconciliation. Later tasks read earlier results from the same tick.

A tick that is not ``ok`` (or that raises) bumps ``consecutive_failures``,
which stretches the next sleep. A tripped invariant breaker stops the loop
before the next tick; it is never retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
import time
from collections.abc import Callable
from typing import Any

from mandate_rail.control.state import LoopState, load_state, save_state
from mandate_rail.control.tasks import ControlTasks
from mandate_rail.core.codec import sha256_hex, stable_stringify
from mandate_rail.core.config import Config
from mandate_rail.core.dedupe import DedupeStore
from mandate_rail.core.exceptions import InvariantViolationError
from mandate_rail.core.journal import Journal, JournalEventType
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.integrity.invariants import InvariantCore
from mandate_rail.store.factory import store_mode

logger = logging.getLogger(__name__)

MIN_DELAY_MS = 1000
MAX_BACKOFF_MULTIPLIER = 8
JITTER = 0.2

STOP_ONCE = "once"
STOP_SIGNAL = "signal"
STOP_INVARIANT = "invariant_tripped"


def backoff_delay_ms(
    interval_ms: int,
    failures: int,
    max_ms: int,
    *,
    rng: Callable[[], float] | None = None,
) -> int:
    """``min(max, max(1000, interval * min(8, 2**failures)))`` with +/-20% jitter.

    ``rng=None`` returns the un-jittered delay.
    """

    mult = 1 if failures <= 0 else min(MAX_BACKOFF_MULTIPLIER, 2**failures)
    delay = min(max_ms, max(MIN_DELAY_MS, int(interval_ms * mult)))
    if rng is None:
        return delay
    return max(MIN_DELAY_MS, int(delay * (1.0 + JITTER * (2.0 * rng() - 1.0))))


class AutonomousLoop:
    def __init__(
        self,
        config: Config,
        tasks: ControlTasks,
        *,
        invariants: InvariantCore | None = None,
        journal: Journal | None = None,
        dedupe: DedupeStore | None = None,
        rng: Callable[[], float] = random.random,
        clock_ms: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self.auto = config.autonomous
        self.tasks = tasks
        self.invariants = invariants
        self.journal = journal
        self.dedupe = dedupe
        self.rng = rng
        self._clock_ms = clock_ms or (lambda: time.time() * 1000.0)
        self.state: LoopState = load_state(self.auto.state_path)
        self.stop_reason: str | None = None
        self._stop = asyncio.Event()
        self._tripped: list[str] = []
        if invariants is not None:
            invariants.add_trip_listener(self._on_trip)

    def _on_trip(self, name: str, err: InvariantViolationError) -> None:
        self._tripped.append(name)
        self.request_stop(STOP_INVARIANT)

    def request_stop(self, reason: str = STOP_SIGNAL) -> None:
        if self.stop_reason is None or (reason == STOP_INVARIANT and self.stop_reason != reason):
            self.stop_reason = reason
            logger.info("control_loop_stop_requested", extra={"reason": reason})
        self._stop.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on every platform.
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_stop, STOP_SIGNAL)

    def next_delay_ms(self) -> int:
        return backoff_delay_ms(
            self.auto.interval_ms, self.state.consecutive_failures, self.auto.backoff_max_ms, rng=self.rng
        )

    # --- alerts -----------------------------------------------------------

    def _maybe_alert(self, kind: str, payload: dict[str, Any], *, attr: str) -> bool:
        if payload.get("ok") is True:
            return False
        now = self._clock_ms()
        if now - getattr(self.state, attr) < self.auto.alert_cooldown_ms:
            return False
        key = f"alert:{kind}:{sha256_hex(stable_stringify(payload.get('details') or payload.get('needsReview') or kind))}"
        if self.dedupe is not None:
            if self.dedupe.is_recently_done(key):
                return False
            self.dedupe.mark_done(key)
        setattr(self.state, attr, now)
        logger.warning("control_alert", extra={"kind": kind, "payload": payload})
        return True

    # --- tick -------------------------------------------------------------

    async def run_tick(self) -> dict[str, Any]:
        flags = self.auto.tasks
        t = self.tasks
        results: dict[str, Any] = {}
        out: dict[str, Any] = {
            "ok": True,
            "at": to_iso(utc_now()),
            "mode": store_mode(t.collections.store),
            "results": results,
        }

        if flags.health:
            results["health"] = await t.check_health()
            self._maybe_alert("health", results["health"], attr="last_alert_at")

        if flags.available_balance:
            results["availableBalance"] = await t.available_balance()

        if flags.report_pending_approval:
            results["pendingApproval"] = await t.pending_approval()

        if flags.report_stuck_payouts:
            results["stuckPayouts"] = await t.stuck_payouts()

        if flags.create_payout_batches:
            results["createPayoutBatches"] = await t.create_payout_batches(balance=results.get("availableBalance"))

        if flags.auto_approve_payout_batches and self.auto.payout.auto_approve.enabled:
            summary = await t.auto_approve(results.get("pendingApproval"))
            results["autoApproval"] = summary
            self._maybe_alert("auto_approval", summary, attr="last_approval_alert_at")

        if flags.auto_submit_payout_batches:
            results["autoSubmit"] = await t.submit_approved_batches(results.get("health"))

        if flags.reconcile_payout_batches:
            results["reconcile"] = await t.reconcile_batches()

        out["ok"] = all(not (isinstance(v, dict) and v.get("ok") is False) for v in results.values())
        out["mode"] = store_mode(t.collections.store)

        if self.journal is not None:
            self.journal.append(
                event_type=JournalEventType.CONTROL_TICK_V1,
                payload={"ok": out["ok"], "at": out["at"], "mode": out["mode"], "tasks": sorted(results)},
                source="control.loop",
            )
        return out

    # --- run --------------------------------------------------------------

    def _persist(self) -> None:
        save_state(self.auto.state_path, self.state)
        if self.dedupe is not None:
            self.dedupe.flush(force=True)

    def _invariants_tripped(self) -> bool:
        return bool(self._tripped) or (self.invariants is not None and self.invariants.is_tripped())

    async def run(self, *, once: bool = False, on_tick: Callable[[dict[str, Any]], None] | None = None) -> str:
        """Run until stopped. Returns the stop reason."""

        logger.info(
            "control_loop_started",
            extra={"once": once, "interval_ms": self.auto.interval_ms, "failures": self.state.consecutive_failures},
        )
        while True:
            if self._invariants_tripped():
                self.request_stop(STOP_INVARIANT)
                break
            if self._stop.is_set():
                break

            try:
                out = await self.run_tick()
            except InvariantViolationError as e:
                logger.error("control_tick_invariant_failure", extra={"invariant": e.invariant})
                self.state.consecutive_failures += 1
                self.request_stop(STOP_INVARIANT)
                self._persist()
                break
            except Exception as e:
                logger.exception("control_tick_failed", extra={"error": str(e)})
                self.state.consecutive_failures += 1
            else:
                self.state.consecutive_failures = 0 if out["ok"] else self.state.consecutive_failures + 1
                if on_tick is not None:
                    on_tick(out)

            self._persist()

            if once:
                self.request_stop(STOP_ONCE)
                break

            delay = self.next_delay_ms()
            logger.debug("control_loop_sleep", extra={"delay_ms": delay})
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=delay / 1000.0)

        logger.info("control_loop_stopped", extra={"reason": self.stop_reason})
        return self.stop_reason or STOP_SIGNAL
