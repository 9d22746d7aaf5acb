from __future__ import annotations

import json

import httpx
import pytest

from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import ProcessorConfig
from mandate_rail.core.exceptions import ConfigError, ProcessorRequestError
from mandate_rail.processor.paypal import InMemoryPayoutProcessor, PayPalClient, is_placeholder

BASE = "https://api-m.sandbox.paypal.com"


def _paypal(handler, *, clock=lambda: 0.0) -> PayPalClient:
    cfg = ProcessorConfig(base_url=BASE, max_attempts=1)
    client = RetryingClient(cfg, transport=httpx.MockTransport(handler))
    return PayPalClient(cfg, client, client_id="cid", client_secret="secret", clock=clock)


def test_placeholders_count_as_missing() -> None:
    assert is_placeholder(None)
    assert is_placeholder("  ")
    assert is_placeholder("<YOUR_CLIENT_ID>")
    assert is_placeholder("changeme")
    assert not is_placeholder("AbC123")


def test_from_env_requires_credentials() -> None:
    cfg = ProcessorConfig()
    with pytest.raises(ConfigError):
        PayPalClient.from_env(cfg, RetryingClient(cfg), env={"PAYPAL_CLIENT_ID": "YOUR_CLIENT_ID"})


@pytest.mark.anyio
async def test_token_is_cached_and_batch_is_posted() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.url.path == "/v1/oauth2/token":
            assert request.headers["Authorization"].startswith("Basic ")
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer tok"
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["sender_batch_header"]["sender_batch_id"] == "PAYBATCH-1"
            return httpx.Response(201, json={"batch_header": {"payout_batch_id": "PB1", "batch_status": "PENDING"}})
        return httpx.Response(200, json={"batch_header": {"payout_batch_id": "PB1", "batch_status": "SUCCESS"}})

    pp = _paypal(handler)
    assert pp.is_sandbox is True

    created = await pp.create_payout_batch(sender_batch_id="PAYBATCH-1", items=[{"amount": {"value": "1.00"}}])
    fetched = await pp.get_payout_batch("PB1")
    await pp.client.aclose()

    assert created["batch_header"]["payout_batch_id"] == "PB1"
    assert fetched["batch_header"]["batch_status"] == "SUCCESS"
    assert seen.count(("POST", "/v1/oauth2/token")) == 1


@pytest.mark.anyio
async def test_token_refreshes_after_expiry() -> None:
    now = [0.0]
    tokens = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        tokens["n"] += 1
        return httpx.Response(200, json={"access_token": f"t{tokens['n']}", "expires_in": 120})

    pp = _paypal(handler, clock=lambda: now[0])
    assert await pp.access_token() == "t1"
    now[0] = 30.0
    assert await pp.access_token() == "t1"
    now[0] = 61.0
    assert await pp.access_token() == "t2"
    await pp.client.aclose()


@pytest.mark.anyio
async def test_token_response_without_token_fails() -> None:
    pp = _paypal(lambda r: httpx.Response(200, json={}))
    with pytest.raises(ProcessorRequestError):
        await pp.ping()
    await pp.client.aclose()


@pytest.mark.anyio
async def test_in_memory_processor() -> None:
    proc = InMemoryPayoutProcessor()
    created = await proc.create_payout_batch(
        sender_batch_id="S1", items=[{"receiver": "bob@example.com", "sender_item_id": "I1"}]
    )
    pid = created["batch_header"]["payout_batch_id"]

    proc.set_status(pid, "SUCCESS")
    got = await proc.get_payout_batch(pid)
    assert got["batch_header"]["batch_status"] == "SUCCESS"
    [item] = got["items"]
    assert item["payout_item"]["sender_item_id"] == "I1"
    assert item["transaction_status"] == "SUCCESS"
    assert item["transaction_id"] == f"TX-{item['payout_item_id']}"

    with pytest.raises(ProcessorRequestError):
        await proc.get_payout_batch("missing")

    proc.healthy = False
    with pytest.raises(ProcessorRequestError):
        await proc.ping()
