"""mandate_rail.store.remote

Remote entity store over HTTP.

Endpoints (relative to ``{base_url}/apps/{app_id}``):
- ``GET  /entities/{entity}?sort=&limit=&skip=&fields=&q=<json>``
- ``POST /entities/{entity}``
- ``PUT  /entities/{entity}/{id}``

The remote API has no compare-and-swap. ``unique_on`` and ``expect`` are
checked by reading first, which narrows the race window but cannot close
it; lease and idempotency callers re-read after writing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import StoreConfig
from mandate_rail.core.exceptions import ConfigError, ProcessorRequestError, RecordNotFoundError, StoreUnavailableError
from mandate_rail.store.base import (
    DEFAULT_SORT,
    DuplicateRecordError,
    Record,
    WriteConflictError,
    matches_filter,
)

logger = logging.getLogger(__name__)


class RemoteStore:
    def __init__(self, config: StoreConfig, client: RetryingClient) -> None:
        if not config.app_id:
            raise ConfigError("store.app_id is required for the remote store")
        self.config = config
        self.client = client
        self._root = f"{config.base_url.rstrip('/')}/apps/{config.app_id}/entities"

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.config.api_key:
            h["api_key"] = self.config.api_key
        return h

    async def _call(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            return await self.client.request_json(method, url, headers=self._headers(), **kwargs)
        except ProcessorRequestError as e:
            if e.status == 404 and method == "PUT":
                raise RecordNotFoundError(str(e)) from e
            if e.status is None or e.status in (401, 403) or e.status >= 500:
                raise StoreUnavailableError(str(e)) from e
            raise

    async def _get(
        self,
        entity: str,
        query: Mapping[str, Any] | None,
        sort: str,
        limit: int,
        offset: int,
        fields: Sequence[str] | None,
    ) -> list[Record]:
        params: dict[str, Any] = {"sort": sort, "limit": int(limit), "skip": int(offset)}
        if fields:
            params["fields"] = ",".join(fields)
        if query:
            params["q"] = json.dumps(dict(query), separators=(",", ":"))
        data = await self._call("GET", f"{self._root}/{entity}", params=params)
        if not isinstance(data, list):
            raise StoreUnavailableError(f"unexpected list response for {entity}")
        return [r for r in data if isinstance(r, dict)]

    async def list(
        self,
        entity: str,
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        return await self._get(entity, None, sort, limit, offset, fields)

    async def filter(
        self,
        entity: str,
        query: Mapping[str, Any],
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        return await self._get(entity, query, sort, limit, offset, fields)

    async def create(
        self,
        entity: str,
        data: Mapping[str, Any],
        *,
        unique_on: Sequence[str] | None = None,
    ) -> Record:
        if unique_on:
            unique_key = {f: data.get(f) for f in unique_on}
            if await self._get(entity, unique_key, DEFAULT_SORT, 1, 0, ["id"]):
                raise DuplicateRecordError(f"{entity}: duplicate on {sorted(unique_key)}")
        out = await self._call("POST", f"{self._root}/{entity}", json=dict(data))
        if not isinstance(out, dict) or "id" not in out:
            raise StoreUnavailableError(f"create on {entity} returned no id")
        return out

    async def update(
        self,
        entity: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Record:
        if expect is not None:
            current = await self._get(entity, {"id": record_id}, DEFAULT_SORT, 1, 0, None)
            if not current:
                raise RecordNotFoundError(f"{entity} missing id={record_id}")
            if not matches_filter(current[0], expect):
                raise WriteConflictError(f"{entity} id={record_id} changed underneath")
        out = await self._call("PUT", f"{self._root}/{entity}/{record_id}", json=dict(patch))
        if not isinstance(out, dict):
            raise StoreUnavailableError(f"update on {entity} returned no record")
        return out
