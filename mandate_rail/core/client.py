"""mandate_rail.core.client

Shared HTTP client with:
- a named circuit breaker around the whole retry sequence
- bounded retries (exponential backoff, jitter, Retry-After)
- a hard per-request timeout

429/500/502/503/504 and transport errors are retried. Every other non-2xx
fails immediately with the status and a truncated body attached.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx

from mandate_rail.concurrency.circuit_breaker import CircuitBreaker
from mandate_rail.core.config import ProcessorConfig
from mandate_rail.core.exceptions import ProcessorRequestError
from mandate_rail.core.time import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
BODY_PREVIEW_CHARS = 500


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.25
    factor: float = 2.0
    jitter_low: float = 0.8
    jitter_high: float = 1.2
    max_delay_s: float = 30.0

    @classmethod
    def from_config(cls, cfg: ProcessorConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, cfg.max_attempts),
            base_delay_s=cfg.base_delay_ms / 1000.0,
            factor=cfg.backoff_factor,
        )

    def delay_s(self, attempt: int, *, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (1-based)."""

        raw = self.base_delay_s * (self.factor ** (attempt - 1))
        jitter = self.jitter_low + (self.jitter_high - self.jitter_low) * rng()
        return min(self.max_delay_s, raw * jitter)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds or HTTP-date)."""

    if not value:
        return None
    v = value.strip()
    try:
        return max(0.0, float(v))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def _preview(resp: httpx.Response) -> str:
    try:
        return resp.text[:BODY_PREVIEW_CHARS]
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    delay_hint: Callable[[Exception], float | None] = lambda e: None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``fn`` up to ``policy.max_attempts`` times."""

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not should_retry(e):
                raise
            hint = delay_hint(e)
            delay = min(policy.max_delay_s, hint) if hint is not None else policy.delay_s(attempt)
            logger.warning("request_retry", extra={"attempt": attempt, "delay_s": round(delay, 3), "error": str(e)})
            await sleep(delay)
            attempt += 1


class _RetryableStatus(ProcessorRequestError):
    def __init__(self, message: str, *, status: int, body: str, retry_after_s: float | None) -> None:
        super().__init__(message, status=status, body=body)
        self.retry_after_s = retry_after_s


class RetryingClient:
    def __init__(
        self,
        config: ProcessorConfig | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ProcessorConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self.breaker = breaker or CircuitBreaker(
            name="http",
            failure_threshold=self.config.breaker_failure_threshold,
            reset_timeout_s=self.config.breaker_reset_timeout_ms / 1000.0,
            window_s=self.config.breaker_window_ms / 1000.0,
        )
        self._sleep = sleep
        self._client = httpx.AsyncClient(timeout=self.config.timeout_s, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RetryingClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def _attempt(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProcessorRequestError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProcessorRequestError(f"{method} {url} failed: {e}") from e

        if resp.is_success:
            return resp

        body = _preview(resp)
        msg = f"HTTP {resp.status_code} for {method} {url}"
        if resp.status_code in RETRYABLE_STATUS:
            raise _RetryableStatus(
                msg,
                status=resp.status_code,
                body=body,
                retry_after_s=parse_retry_after(resp.headers.get("Retry-After")),
            )
        raise ProcessorRequestError(msg, status=resp.status_code, body=body)

    @staticmethod
    def _should_retry(e: Exception) -> bool:
        if isinstance(e, _RetryableStatus):
            return True
        return isinstance(e, ProcessorRequestError) and e.status is None

    @staticmethod
    def _delay_hint(e: Exception) -> float | None:
        return e.retry_after_s if isinstance(e, _RetryableStatus) else None

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async def _run() -> httpx.Response:
            return await with_retry(
                lambda: self._attempt(method, url, **kwargs),
                policy=self.policy,
                should_retry=self._should_retry,
                delay_hint=self._delay_hint,
                sleep=self._sleep,
            )

        try:
            return await self.breaker.call(_run)
        except _RetryableStatus as e:
            raise ProcessorRequestError(str(e), status=e.status, body=e.body) from e

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        expected: type | tuple[type, ...] | None = None,
        max_bytes: int = 1024 * 1024,
        **kwargs: Any,
    ) -> Any:
        """Request and parse JSON with a hard cap on body size."""

        resp = await self.request(method, url, **kwargs)
        if len(resp.content) > int(max_bytes):
            raise ProcessorRequestError(f"response_too_large:{len(resp.content)}", status=resp.status_code)
        if not resp.content:
            return None
        try:
            data: Any = resp.json()
        except ValueError as e:
            raise ProcessorRequestError("response_not_json", status=resp.status_code, body=_preview(resp)) from e
        if expected is not None and not isinstance(data, expected):
            raise ProcessorRequestError("response_schema_mismatch", status=resp.status_code)
        return data
