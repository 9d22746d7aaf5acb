"""mandate_rail.concurrency.lease

Store-backed work leases.

One lease record per key. A holder owns the key while the lease is
unexpired; expiry is the only release. Renewal is a re-acquire by the same
holder.

Writes are guarded twice: stores that support it reject a duplicate create
(``unique_on``) or a stale update (``expect``). After writing we re-read
the canonical (oldest) record for the key and only report success if it
names us. Against a store with neither guard two writers can still
interleave; that gap is documented, not hidden.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mandate_rail.core.config import LeaseEntity
from mandate_rail.core.exceptions import MandateRailError
from mandate_rail.core.time import plus_ms, to_iso, try_parse_dt, utc_now
from mandate_rail.store.base import Collection, Record, WriteConflictError

logger = logging.getLogger(__name__)

MIN_TTL_MS = 1000
DEFAULT_TTL_MS = 60_000
STATUS_CLAIMED = "CLAIMED"


@dataclass(frozen=True, slots=True)
class LeaseResult:
    acquired: bool
    id: str | None
    expires_at: str | None
    holder: str | None

    def as_dict(self) -> dict[str, Any]:
        return {"acquired": self.acquired, "id": self.id, "expiresAt": self.expires_at, "holder": self.holder}


class WorkLease:
    def __init__(self, collection: Collection, fields: LeaseEntity | None = None) -> None:
        self.collection = collection
        self.f = fields or LeaseEntity()

    async def _canonical(self, key: str) -> Record | None:
        return await self.collection.find_one({self.f.key: key}, sort="created_date")

    def _is_live(self, rec: Record, now: datetime) -> bool:
        exp = try_parse_dt(rec.get(self.f.expires_at))
        return exp is not None and exp > now

    def _result(self, rec: Record, *, acquired: bool) -> LeaseResult:
        return LeaseResult(
            acquired=acquired,
            id=str(rec.get("id")) if rec.get("id") is not None else None,
            expires_at=rec.get(self.f.expires_at),
            holder=rec.get(self.f.holder),
        )

    def _owned_by(self, rec: Record | None, holder: str, now: datetime) -> bool:
        return rec is not None and rec.get(self.f.holder) == holder and self._is_live(rec, now)

    async def acquire(
        self,
        *,
        key: str,
        holder: str,
        ttl_ms: int = DEFAULT_TTL_MS,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> LeaseResult:
        if not key or not holder:
            raise ValueError("lease key and holder are required")

        ts = now or utc_now()
        ttl = max(MIN_TTL_MS, int(ttl_ms))
        claim = {
            self.f.holder: holder,
            self.f.claimed_at: to_iso(ts),
            self.f.expires_at: to_iso(plus_ms(ts, ttl)),
            self.f.status: STATUS_CLAIMED,
            self.f.meta: meta or {},
        }

        existing = await self._canonical(key)

        if existing is None:
            try:
                created = await self.collection.create({self.f.key: key, **claim}, unique_on=[self.f.key])
            except MandateRailError:
                rec = await self._canonical(key)
                if rec is None:
                    raise
                won = self._owned_by(rec, holder, ts)
                logger.info("lease_create_race", extra={"key": key, "holder": holder, "acquired": won})
                return self._result(rec, acquired=won)

            rec = await self._canonical(key)
            if rec is not None and rec.get("id") != created.get("id"):
                won = self._owned_by(rec, holder, ts)
                logger.warning("lease_duplicate_record", extra={"key": key, "holder": holder, "acquired": won})
                return self._result(rec, acquired=won)
            return self._result(created, acquired=True)

        if self._is_live(existing, ts) and existing.get(self.f.holder) != holder:
            return self._result(existing, acquired=False)

        try:
            updated = await self.collection.update(
                str(existing["id"]),
                claim,
                expect={
                    self.f.holder: existing.get(self.f.holder),
                    self.f.expires_at: existing.get(self.f.expires_at),
                },
            )
        except WriteConflictError:
            rec = await self._canonical(key)
            won = self._owned_by(rec, holder, ts)
            logger.info("lease_update_race", extra={"key": key, "holder": holder, "acquired": won})
            if rec is None:
                return LeaseResult(acquired=False, id=None, expires_at=None, holder=None)
            return self._result(rec, acquired=won)

        if updated.get(self.f.holder) != holder:
            return self._result(updated, acquired=False)
        rec = await self._canonical(key)
        if rec is not None and rec.get(self.f.holder) != holder:
            return self._result(rec, acquired=False)
        return self._result(updated, acquired=True)


async def acquire_work_lease(
    collection: Collection,
    *,
    key: str,
    holder: str,
    ttl_ms: int = DEFAULT_TTL_MS,
    meta: dict[str, Any] | None = None,
    fields: LeaseEntity | None = None,
    now: datetime | None = None,
) -> LeaseResult:
    return await WorkLease(collection, fields).acquire(key=key, holder=holder, ttl_ms=ttl_ms, meta=meta, now=now)
