"""mandate_rail.core.dedupe

Persistent "recently done" cache.

A TTL says how long we trust a memory. An LRU cap says how much of it we
keep. The file is a convenience for restarts, not a source of truth: the
remote store's idempotent creates remain the real guard.

File format: ``{"v": 1, "items": [[key, at_ms], ...]}`` in LRU order.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mandate_rail.core.config import DedupeConfig
from mandate_rail.core.files import atomic_write_json, read_json

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass(frozen=True, slots=True)
class DedupeStats:
    entries: int
    max_entries: int
    ttl_ms: int
    dirty: bool
    path: str


class DedupeStore:
    """TTL + LRU map of ``key -> done_at_ms``.

    Owned by one event loop. Created once at process start, flushed on shutdown.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ttl_ms: int = 30 * 60 * 1000,
        max_entries: int = 5000,
        flush_interval_ms: int = 5000,
        clock_ms: Callable[[], float] | None = None,
    ) -> None:
        self.path = Path(path)
        self.ttl_ms = int(ttl_ms)
        self.max_entries = max(1, int(max_entries))
        self.flush_interval_ms = int(flush_interval_ms)
        self._clock_ms = clock_ms or (lambda: time.time() * 1000.0)
        self._items: OrderedDict[str, float] = OrderedDict()
        self._dirty = False
        self._last_flush_ms = 0.0

    @classmethod
    def from_config(cls, cfg: DedupeConfig) -> DedupeStore:
        store = cls(
            cfg.path,
            ttl_ms=cfg.ttl_ms,
            max_entries=cfg.max_entries,
            flush_interval_ms=cfg.flush_interval_ms,
        )
        store.load()
        return store

    def _prune(self, now_ms: float) -> None:
        cutoff = now_ms - self.ttl_ms
        for key in [k for k, at in self._items.items() if at < cutoff]:
            del self._items[key]
            self._dirty = True
        while len(self._items) > self.max_entries:
            self._items.popitem(last=False)
            self._dirty = True

    def is_recently_done(self, key: str) -> bool:
        at = self._items.get(str(key))
        if at is None:
            return False
        if self._clock_ms() - at > self.ttl_ms:
            del self._items[str(key)]
            self._dirty = True
            return False
        return True

    def mark_done(self, key: str) -> None:
        now = self._clock_ms()
        k = str(key)
        self._items.pop(k, None)
        self._items[k] = now
        self._dirty = True
        self._prune(now)
        if now - self._last_flush_ms >= self.flush_interval_ms:
            self.flush()

    def load(self) -> None:
        try:
            raw: Any = read_json(self.path, default=None)
        except ValueError:
            logger.warning("dedupe_cache_unreadable", extra={"path": str(self.path)})
            raw = None
        self._items.clear()
        if isinstance(raw, dict) and raw.get("v") == FORMAT_VERSION:
            for pair in raw.get("items") or []:
                if isinstance(pair, list) and len(pair) == 2 and isinstance(pair[1], (int, float)):
                    self._items[str(pair[0])] = float(pair[1])
        self._prune(self._clock_ms())
        self._dirty = False

    def flush(self, *, force: bool = False) -> None:
        if not self._dirty and not force:
            return
        atomic_write_json(
            self.path,
            {"v": FORMAT_VERSION, "items": [[k, int(at)] for k, at in self._items.items()]},
        )
        self._dirty = False
        self._last_flush_ms = self._clock_ms()

    def stats(self) -> DedupeStats:
        return DedupeStats(
            entries=len(self._items),
            max_entries=self.max_entries,
            ttl_ms=self.ttl_ms,
            dirty=self._dirty,
            path=str(self.path),
        )
