"""mandate_rail.concurrency.idempotent

Create-with-filter, recover-on-race.

1) look up the dedupe key; return the existing record if found
2) create (with a uniqueness hint the store may enforce)
3) if create fails, look again: a record means another writer won the
   race, which is not an error. No record means the failure was real.
4) after a successful create, re-read the oldest record for the key; if
   it is not ours, a writer got past a non-atomic store and we defer to it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from mandate_rail.core.exceptions import MandateRailError
from mandate_rail.store.base import Collection, Record

logger = logging.getLogger(__name__)

# Oldest record wins when a store let duplicates through.
CANONICAL_SORT = "created_date"


@dataclass(frozen=True, slots=True)
class CreateResult:
    id: str
    deduped: bool
    record: Record = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "deduped": self.deduped}


async def _canonical(collection: Collection, dedupe: Mapping[str, Any]) -> Record | None:
    return await collection.find_one(dedupe, sort=CANONICAL_SORT)


async def create_idempotent(
    collection: Collection,
    *,
    dedupe: Mapping[str, Any],
    data: Mapping[str, Any],
) -> CreateResult:
    if not dedupe or any(v is None or v == "" for v in dedupe.values()):
        raise ValueError(f"{collection.name}: dedupe key must be fully populated")

    existing = await _canonical(collection, dedupe)
    if existing is not None:
        return CreateResult(id=str(existing["id"]), deduped=True, record=existing)

    try:
        created = await collection.create(data, unique_on=list(dedupe))
    except MandateRailError as e:
        again = await _canonical(collection, dedupe)
        if again is None:
            raise
        logger.info(
            "create_race_resolved",
            extra={"entity": collection.name, "record_id": again.get("id"), "error": str(e)},
        )
        return CreateResult(id=str(again["id"]), deduped=True, record=again)

    # Stores without an atomic unique_on can let a racing writer through.
    canonical = await _canonical(collection, dedupe)
    if canonical is not None and canonical.get("id") != created.get("id"):
        logger.warning(
            "create_duplicate_record",
            extra={"entity": collection.name, "record_id": canonical.get("id"), "duplicate_id": created.get("id")},
        )
        return CreateResult(id=str(canonical["id"]), deduped=True, record=canonical)

    return CreateResult(id=str(created["id"]), deduped=False, record=created)
