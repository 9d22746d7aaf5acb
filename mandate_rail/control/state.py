"""mandate_rail.control.state

Control loop state that survives restarts.

Only counters and alert timestamps live here. Anything about money lives in
the record store.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from mandate_rail.core.files import atomic_write_json, read_json
from mandate_rail.core.time import to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopState:
    last_alert_at: float = 0.0
    last_approval_alert_at: float = 0.0
    consecutive_failures: int = 0
    updated_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Any) -> LoopState:
        if not isinstance(raw, dict):
            return cls()

        def _num(key: str) -> float:
            try:
                return float(raw.get(key) or 0)
            except (TypeError, ValueError):
                return 0.0

        return cls(
            last_alert_at=_num("last_alert_at"),
            last_approval_alert_at=_num("last_approval_alert_at"),
            consecutive_failures=max(0, int(_num("consecutive_failures"))),
            updated_at=raw.get("updated_at"),
        )


def load_state(path: str | Path) -> LoopState:
    try:
        raw = read_json(path, default=None)
    except ValueError:
        logger.warning("loop_state_unreadable", extra={"path": str(path)})
        return LoopState()
    return LoopState.from_dict(raw)


def save_state(path: str | Path, state: LoopState) -> None:
    state.updated_at = to_iso(utc_now())
    atomic_write_json(path, state.as_dict())
