"""mandate_rail.processor.paypal

PayPal Payouts adapter.

Every call goes through the retrying client and the ``paypal`` breaker.
Credentials come from the environment only (``PAYPAL_CLIENT_ID``,
``PAYPAL_CLIENT_SECRET``); placeholder values count as missing.

The control loop depends on the `PayoutProcessor` protocol, so tests run
against `InMemoryPayoutProcessor`.
"""

from __future__ import annotations

import base64
import os
import re
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Protocol
from urllib.parse import quote

from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import ProcessorConfig
from mandate_rail.core.exceptions import ConfigError, ProcessorRequestError

CLIENT_ID_ENV = "PAYPAL_CLIENT_ID"
CLIENT_SECRET_ENV = "PAYPAL_CLIENT_SECRET"

_PLACEHOLDER = re.compile(r"^\s*(<\s*YOUR_[A-Z0-9_]+\s*>|YOUR_[A-Z0-9_]+|REPLACE_ME|CHANGEME|TODO)\s*$", re.I)

# Refresh a little before PayPal says the token expires.
TOKEN_EXPIRY_MARGIN_S = 60.0


def is_placeholder(value: str | None) -> bool:
    return value is None or not str(value).strip() or bool(_PLACEHOLDER.match(str(value)))


class PayoutProcessor(Protocol):
    async def ping(self) -> bool: ...

    async def create_payout_batch(
        self,
        *,
        sender_batch_id: str,
        items: list[dict[str, Any]],
        email_subject: str | None = None,
        email_message: str | None = None,
    ) -> dict[str, Any]: ...

    async def get_payout_batch(self, batch_id: str) -> dict[str, Any]: ...


class PayPalClient:
    def __init__(
        self,
        config: ProcessorConfig,
        client: RetryingClient,
        *,
        client_id: str,
        client_secret: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if is_placeholder(client_id) or is_placeholder(client_secret):
            raise ConfigError(f"Missing required env var: {CLIENT_ID_ENV} / {CLIENT_SECRET_ENV}")
        self.base_url = config.base_url.rstrip("/")
        self.client = client
        self._basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode("ascii")
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_env(
        cls, config: ProcessorConfig, client: RetryingClient, env: Mapping[str, str] | None = None
    ) -> PayPalClient:
        e = os.environ if env is None else env
        return cls(config, client, client_id=e.get(CLIENT_ID_ENV, ""), client_secret=e.get(CLIENT_SECRET_ENV, ""))

    @property
    def is_sandbox(self) -> bool:
        return "sandbox.paypal.com" in self.base_url

    async def access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        data = await self.client.request_json(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            headers={
                "Authorization": f"Basic {self._basic}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            content=b"grant_type=client_credentials",
            expected=dict,
        )
        token = data.get("access_token")
        if not token:
            raise ProcessorRequestError("PayPal token response missing access_token")
        ttl = float(data.get("expires_in") or 0)
        self._token = str(token)
        self._token_expires_at = self._clock() + max(0.0, ttl - TOKEN_EXPIRY_MARGIN_S)
        return self._token

    async def _request(self, method: str, path: str, *, body: Any = None) -> Any:
        token = await self.access_token()
        headers = {"Authorization": f"Bearer {token}"}
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        return await self.client.request_json(method, f"{self.base_url}{path}", **kwargs)

    async def ping(self) -> bool:
        await self.access_token()
        return True

    async def create_payout_batch(
        self,
        *,
        sender_batch_id: str,
        items: list[dict[str, Any]],
        email_subject: str | None = None,
        email_message: str | None = None,
    ) -> dict[str, Any]:
        header: dict[str, Any] = {"sender_batch_id": str(sender_batch_id)}
        if email_subject:
            header["email_subject"] = email_subject
        if email_message:
            header["email_message"] = email_message
        return await self._request("POST", "/v1/payments/payouts", body={"sender_batch_header": header, "items": items})

    async def get_payout_batch(self, batch_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/payments/payouts/{quote(str(batch_id), safe='')}")


class InMemoryPayoutProcessor:
    """Test double: accepts batches and reports them back in PayPal's GET shape."""

    # batch_status -> transaction_status of every item in the batch
    ITEM_STATUS = {"SUCCESS": "SUCCESS", "DENIED": "FAILED", "CANCELED": "FAILED"}

    def __init__(self, *, healthy: bool = True) -> None:
        self.healthy = healthy
        self.batches: dict[str, dict[str, Any]] = {}

    async def ping(self) -> bool:
        if not self.healthy:
            raise ProcessorRequestError("processor unavailable", status=503)
        return True

    async def create_payout_batch(
        self,
        *,
        sender_batch_id: str,
        items: list[dict[str, Any]],
        email_subject: str | None = None,
        email_message: str | None = None,
    ) -> dict[str, Any]:
        pid = uuid.uuid4().hex[:13].upper()
        batch = {
            "batch_header": {
                "payout_batch_id": pid,
                "batch_status": "PENDING",
                "sender_batch_header": {"sender_batch_id": sender_batch_id},
            },
            "items": [
                {"payout_item_id": f"{pid}-{i}", "transaction_status": "PENDING", "payout_item": dict(it)}
                for i, it in enumerate(items)
            ],
        }
        self.batches[pid] = batch
        return batch

    async def get_payout_batch(self, batch_id: str) -> dict[str, Any]:
        try:
            return self.batches[batch_id]
        except KeyError:
            raise ProcessorRequestError(f"batch {batch_id} not found", status=404) from None

    def set_status(self, batch_id: str, status: str) -> None:
        batch = self.batches[batch_id]
        batch["batch_header"]["batch_status"] = status
        item_status = self.ITEM_STATUS.get(status)
        if item_status is None:
            return
        processed = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        for it in batch["items"]:
            it["transaction_status"] = item_status
            it["time_processed"] = processed
            if item_status == "SUCCESS":
                it["transaction_id"] = f"TX-{it['payout_item_id']}"
