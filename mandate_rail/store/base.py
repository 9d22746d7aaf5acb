"""mandate_rail.store.base

The record store contract.

Every component depends only on four calls: list, filter, create, update.
Records are plain dicts with an ``id`` plus ``created_date`` and
``updated_date`` stamped by the store.

Two optional strengthenings exist for stores that can honor them:
- ``create(..., unique_on=[...])`` rejects a second record with the same
  values for those fields (`DuplicateRecordError`)
- ``update(..., expect={...})`` only applies the patch if the current
  record still matches ``expect`` (`WriteConflictError`)

Local stores implement both atomically. The remote store cannot, and
falls back to read-before-write; callers re-read to detect lost races.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from mandate_rail.core.config import EntitiesConfig
from mandate_rail.core.exceptions import ConfigError, StoreError

Record = dict[str, Any]

DEFAULT_SORT = "-created_date"


class DuplicateRecordError(StoreError):
    """A unique constraint on create was violated."""


class WriteConflictError(StoreError):
    """A conditional update found the record changed underneath it."""


@runtime_checkable
class RecordStore(Protocol):
    async def list(
        self,
        entity: str,
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]: ...

    async def filter(
        self,
        entity: str,
        query: Mapping[str, Any],
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]: ...

    async def create(
        self,
        entity: str,
        data: Mapping[str, Any],
        *,
        unique_on: Sequence[str] | None = None,
    ) -> Record: ...

    async def update(
        self,
        entity: str,
        record_id: str,
        patch: Mapping[str, Any],
        *,
        expect: Mapping[str, Any] | None = None,
    ) -> Record: ...


# -----------------
# Shared query helpers (local stores)
# -----------------


def parse_sort(sort: str | None) -> tuple[str, int]:
    s = str(sort or "").strip()
    if not s:
        return "created_date", -1
    if s.startswith("-"):
        return s[1:], -1
    return s, 1


def sort_records(records: Sequence[Record], sort: str | None) -> list[Record]:
    """Ties follow insertion order in the sort direction; missing keys sort last."""

    key, direction = parse_sort(sort)
    present = [(i, r) for i, r in enumerate(records) if r.get(key) is not None]
    missing = [r for r in records if r.get(key) is None]

    def _k(item: tuple[int, Record]) -> Any:
        i, r = item
        v = r.get(key)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return (0, v, "", i)
        return (1, 0, str(v), i)

    present.sort(key=_k, reverse=direction < 0)
    return [r for _, r in present] + missing


def matches_filter(record: Mapping[str, Any], query: Mapping[str, Any] | None) -> bool:
    """Equality on every key. A list value means "any of"."""

    if not query:
        return True
    for k, v in query.items():
        rv = record.get(k)
        if isinstance(v, (list, tuple, set, frozenset)):
            if not any(x == rv for x in v):
                return False
            continue
        if rv != v:
            return False
    return True


def select_fields(record: Record, fields: Sequence[str] | None) -> Record:
    if not fields:
        return dict(record)
    return {f: record[f] for f in fields if f in record}


# -----------------
# Typed entity handles
# -----------------


class Collection:
    """A store bound to one entity name."""

    def __init__(self, store: RecordStore, name: str) -> None:
        self.store = store
        self.name = name

    def __repr__(self) -> str:
        return f"Collection({self.name!r})"

    async def list(
        self, sort: str = DEFAULT_SORT, limit: int = 50, offset: int = 0, fields: Sequence[str] | None = None
    ) -> list[Record]:
        return await self.store.list(self.name, sort, limit, offset, fields)

    async def filter(
        self,
        query: Mapping[str, Any],
        sort: str = DEFAULT_SORT,
        limit: int = 50,
        offset: int = 0,
        fields: Sequence[str] | None = None,
    ) -> list[Record]:
        return await self.store.filter(self.name, query, sort, limit, offset, fields)

    async def find_one(self, query: Mapping[str, Any], sort: str = DEFAULT_SORT) -> Record | None:
        rows = await self.filter(query, sort, 1, 0)
        return rows[0] if rows else None

    async def create(self, data: Mapping[str, Any], *, unique_on: Sequence[str] | None = None) -> Record:
        return await self.store.create(self.name, data, unique_on=unique_on)

    async def update(
        self, record_id: str, patch: Mapping[str, Any], *, expect: Mapping[str, Any] | None = None
    ) -> Record:
        return await self.store.update(self.name, record_id, patch, expect=expect)

    async def list_all(
        self, *, query: Mapping[str, Any] | None = None, page_size: int = 250, max_records: int = 100_000
    ) -> list[Record]:
        out: list[Record] = []
        offset = 0
        while len(out) < max_records:
            if query:
                page = await self.filter(query, DEFAULT_SORT, page_size, offset)
            else:
                page = await self.list(DEFAULT_SORT, page_size, offset)
            out.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return out[:max_records]


class Collections:
    """Factory for `Collection` handles, validated against the entity registry."""

    def __init__(self, store: RecordStore, entities: EntitiesConfig) -> None:
        self.store = store
        self.entities = entities
        self._known = entities.entity_names()

    def get(self, name: str) -> Collection:
        if name not in self._known:
            raise ConfigError(f"Unknown entity: {name}")
        return Collection(self.store, name)
