from __future__ import annotations

import asyncio

import pytest

from mandate_rail.concurrency.circuit_breaker import BreakerRegistry, BreakerState, CircuitBreaker
from mandate_rail.core.config import ProcessorConfig
from mandate_rail.core.exceptions import CircuitOpenError


def test_opens_after_threshold_and_half_opens_after_timeout() -> None:
    br = CircuitBreaker(name="paypal", failure_threshold=2, reset_timeout_s=10.0, window_s=60.0)

    br.record_failure(now=0.0)
    assert br.current_state(now=0.0) is BreakerState.CLOSED

    br.record_failure(now=1.0)
    assert br.current_state(now=1.0) is BreakerState.OPEN
    assert br.can_call(now=5.0) is False
    assert br.retry_after_s(now=5.0) == pytest.approx(6.0)

    assert br.current_state(now=11.0) is BreakerState.HALF_OPEN


def test_half_open_failure_reopens_and_success_closes() -> None:
    br = CircuitBreaker(name="store", failure_threshold=1, reset_timeout_s=1.0)
    br.record_failure(now=0.0)
    assert br.current_state(now=2.0) is BreakerState.HALF_OPEN

    br.record_failure(now=2.0)
    assert br.current_state(now=2.5) is BreakerState.OPEN

    br.record_success()
    assert br.current_state() is BreakerState.CLOSED
    assert br.failures == 0


def test_failures_outside_window_do_not_count() -> None:
    br = CircuitBreaker(name="x", failure_threshold=2, window_s=10.0)
    br.record_failure(now=0.0)
    br.record_failure(now=20.0)
    assert br.current_state(now=20.0) is BreakerState.CLOSED


@pytest.mark.anyio
async def test_call_raises_when_open() -> None:
    t = [0.0]
    br = CircuitBreaker(name="x", failure_threshold=1, reset_timeout_s=60.0, clock=lambda: t[0])

    async def boom() -> int:
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await br.call(boom)

    async def ok() -> int:
        return 1

    with pytest.raises(CircuitOpenError):
        await br.call(ok)


def test_registry_reuses_breakers() -> None:
    reg = BreakerRegistry(defaults=ProcessorConfig(breaker_failure_threshold=3))
    assert reg.get("paypal") is reg.get("paypal")
    assert reg.get("paypal").failure_threshold == 3
    assert reg.snapshot() == {"paypal": "CLOSED"}


@pytest.mark.anyio
async def test_half_open_admits_one_trial_call() -> None:
    t = [0.0]
    br = CircuitBreaker(name="paypal", failure_threshold=1, reset_timeout_s=5.0, clock=lambda: t[0])
    br.record_failure()
    t[0] = 10.0
    assert br.current_state() is BreakerState.HALF_OPEN

    release = asyncio.Event()

    async def slow() -> str:
        await release.wait()
        return "ok"

    async def fast() -> str:
        return "fast"

    trial = asyncio.create_task(br.call(slow))
    await asyncio.sleep(0)
    with pytest.raises(CircuitOpenError):
        await br.call(fast)

    release.set()
    assert await trial == "ok"
    assert br.current_state() is BreakerState.CLOSED
    assert await br.call(fast) == "fast"


@pytest.mark.anyio
async def test_failed_trial_reopens_and_frees_the_slot() -> None:
    t = [0.0]
    br = CircuitBreaker(name="paypal", failure_threshold=1, reset_timeout_s=5.0, clock=lambda: t[0])
    br.record_failure()
    t[0] = 10.0

    async def boom() -> None:
        raise RuntimeError("still down")

    with pytest.raises(RuntimeError):
        await br.call(boom)
    assert br.current_state() is BreakerState.OPEN

    async def ok() -> int:
        return 1

    t[0] = 20.0
    assert await br.call(ok) == 1
    assert br.current_state() is BreakerState.CLOSED
