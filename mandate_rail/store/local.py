"""mandate_rail.store.local

Local record stores: in-memory and file-backed (offline mode).

Both honor ``unique_on`` and ``expect`` atomically: there is no await
between the check and the write, and one event loop owns the store.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from mandate_rail.core.exceptions import RecordNotFoundError, StoreError
from mandate_rail.core.files import atomic_write_json, read_json
from mandate_rail.core.time import to_iso, utc_now
from mandate_rail.store.base import (
    DEFAULT_SORT,
    DuplicateRecordError,
    Record,
    WriteConflictError,
    matches_filter,
    select_fields,
    sort_records,
)

logger = logging.getLogger(__name__)

CreateHook = Callable[[str, Mapping[str, Any]], None]


class _LocalStore:
    def __init__(self) -> None:
        self._entities: dict[str, list[Record]] = {}

    # Subclass hooks
    def _bucket(self, entity: str) -> list[Record]:
        return self._entities.setdefault(entity, [])

    def _new_id(self, entity: str) -> str:
        raise NotImplementedError

    def _persist(self) -> None:
        return None

    async def _yield(self) -> None:
        return None

    async def list(
        self,
        entity: str,
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        await self._yield()
        rows = sort_records(self._bucket(entity), sort)[offset : offset + limit]
        return [copy.deepcopy(select_fields(r, fields)) for r in rows]

    async def filter(
        self,
        entity: str,
        query: Mapping[str, Any],
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        await self._yield()
        matched = [r for r in self._bucket(entity) if matches_filter(r, query)]
        rows = sort_records(matched, sort)[offset : offset + limit]
        return [copy.deepcopy(select_fields(r, fields)) for r in rows]

    async def create(
        self,
        entity: str,
        data: Mapping[str, Any],
        *,
        unique_on: Sequence[str] | None = None,
    ) -> Record:
        await self._yield()
        bucket = self._bucket(entity)
        if unique_on:
            unique_key = {f: data.get(f) for f in unique_on}
            if any(matches_filter(r, unique_key) for r in bucket):
                raise DuplicateRecordError(f"{entity}: duplicate on {sorted(unique_key)}")

        now = to_iso(utc_now())
        rid = str(data["id"]) if data.get("id") else self._new_id(entity)
        rec: Record = {**copy.deepcopy(dict(data)), "id": rid, "created_date": now, "updated_date": now}
        bucket.append(rec)
        self._persist()
        return copy.deepcopy(rec)

    async def update(
        self,
        entity: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Record:
        await self._yield()
        bucket = self._bucket(entity)
        for i, rec in enumerate(bucket):
            if rec.get("id") != record_id:
                continue
            if expect is not None and not matches_filter(rec, expect):
                raise WriteConflictError(f"{entity} id={record_id} changed underneath")
            bucket[i] = {**rec, **copy.deepcopy(dict(patch)), "updated_date": to_iso(utc_now())}
            self._persist()
            return copy.deepcopy(bucket[i])
        raise RecordNotFoundError(f"{entity} missing id={record_id}")


class MemoryStore(_LocalStore):
    """In-process store.

    ``interleave=True`` yields to the event loop before every operation, so
    concurrent callers interleave the way they would against a remote store.
    ``on_create`` runs before each create and may raise to inject failures.
    """

    def __init__(self, *, interleave: bool = False, on_create: CreateHook | None = None) -> None:
        super().__init__()
        self.interleave = interleave
        self.on_create = on_create
        self._counter = 0

    def _new_id(self, entity: str) -> str:
        self._counter += 1
        return f"mem_{entity}_{self._counter}"

    async def _yield(self) -> None:
        if self.interleave:
            await asyncio.sleep(0)

    async def create(
        self,
        entity: str,
        data: Mapping[str, Any],
        *,
        unique_on: Sequence[str] | None = None,
    ) -> Record:
        if self.on_create is not None:
            await self._yield()
            self.on_create(entity, data)
        return await super().create(entity, data, unique_on=unique_on)

    def records(self, entity: str) -> list[Record]:
        """Raw view for tests and diagnostics."""

        return copy.deepcopy(self._bucket(entity))


class OfflineStore(_LocalStore):
    """JSON-file store used when the remote store is unreachable.

    File layout: ``{"entities": {"<name>": {"records": [...]}}}``.
    The whole file is rewritten atomically after every write.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        try:
            raw = read_json(self.path, default=None)
        except ValueError as e:
            raise StoreError(f"offline store unreadable: {self.path}") from e
        entities = raw.get("entities") if isinstance(raw, dict) else None
        if isinstance(entities, dict):
            for name, bucket in entities.items():
                records = bucket.get("records") if isinstance(bucket, dict) else None
                if isinstance(records, list):
                    self._entities[str(name)] = [r for r in records if isinstance(r, dict)]
        self._loaded = True
        logger.info("offline_store_loaded", extra={"path": str(self.path), "entities": len(self._entities)})

    def _bucket(self, entity: str) -> list[Record]:
        self._load()
        return super()._bucket(entity)

    def _new_id(self, entity: str) -> str:
        return f"offline_{entity}_{int(time.time() * 1000)}_{random.randrange(1_000_000_000)}"

    def _persist(self) -> None:
        atomic_write_json(
            self.path,
            {"entities": {name: {"records": recs} for name, recs in self._entities.items()}},
        )
