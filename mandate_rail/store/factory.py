"""mandate_rail.store.factory

Store selection and the online → offline fallback.

``auto`` mode starts online and switches to the offline file store the
first time a call fails with a network-shaped error. The switch is sticky
for the life of the process and logged once.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

import httpx

from mandate_rail.concurrency.circuit_breaker import BreakerRegistry
from mandate_rail.core.client import RetryingClient
from mandate_rail.core.config import Config
from mandate_rail.core.exceptions import StoreUnavailableError
from mandate_rail.store.base import DEFAULT_SORT, Record, RecordStore
from mandate_rail.store.local import OfflineStore
from mandate_rail.store.remote import RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_MARKERS = (
    "enotfound",
    "econnrefused",
    "etimedout",
    "fetch failed",
    "network",
    "socket hang up",
    "403",
    "auth_required",
    "connection refused",
    "name or service not known",
    "nodename nor servname",
    "timed out",
    "circuit open",
)


def is_network_error(err: BaseException | str | None) -> bool:
    """True when a failure looks like reachability or auth, not a bad request."""

    if err is None:
        return False
    if isinstance(err, (httpx.TransportError, StoreUnavailableError)):
        return True
    text = str(err).lower()
    return any(m in text for m in NETWORK_MARKERS)


class FallbackStore:
    def __init__(self, online: RecordStore, offline: RecordStore, *, auto: bool = True) -> None:
        self.online = online
        self.offline = offline
        self.auto = auto
        self.mode = "online"

    def force_offline(self, reason: str) -> None:
        if self.mode != "offline":
            logger.warning("store_offline_fallback", extra={"reason": reason})
        self.mode = "offline"

    async def _route(self, op: Callable[[RecordStore], Awaitable[T]]) -> T:
        if self.mode == "offline":
            return await op(self.offline)
        try:
            return await op(self.online)
        except Exception as e:
            if not (self.auto and is_network_error(e)):
                raise
            self.force_offline(str(e))
            return await op(self.offline)

    async def list(
        self,
        entity: str,
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        return await self._route(lambda s: s.list(entity, sort, limit, offset, fields))

    async def filter(
        self,
        entity: str,
        query: Mapping[str, Any],
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        return await self._route(lambda s: s.filter(entity, query, sort, limit, offset, fields))

    async def create(
        self, entity: str, data: Mapping[str, Any], *, unique_on: Sequence[str] | None = None
    ) -> Record:
        return await self._route(lambda s: s.create(entity, data, unique_on=unique_on))

    async def update(
        self,
        entity: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Record:
        return await self._route(lambda s: s.update(entity, record_id, patch, expect=expect))


def store_mode(store: RecordStore) -> str:
    if isinstance(store, FallbackStore):
        return store.mode
    if isinstance(store, OfflineStore):
        return "offline"
    if isinstance(store, RemoteStore):
        return "online"
    return "memory"


def open_store(config: Config, *, breakers: BreakerRegistry | None = None, client: RetryingClient | None = None) -> RecordStore:
    """Build the store the config asks for."""

    cfg = config.store
    offline = OfflineStore(cfg.offline_path)
    if cfg.mode == "offline" or config.autonomous.offline.enabled:
        return offline

    if not cfg.app_id:
        if cfg.mode == "online":
            raise StoreUnavailableError("store.mode=online but store.app_id is empty")
        logger.warning("store_app_id_missing", extra={"fallback": "offline"})
        return offline

    registry = breakers or BreakerRegistry(defaults=config.processor)
    http = client or RetryingClient(config.processor, breaker=registry.get("store"))
    online = RemoteStore(cfg, http)
    if cfg.mode == "online":
        return online
    return FallbackStore(online, offline, auto=config.autonomous.offline.auto)
