"""mandate_rail.core

Core primitives.

If a module needs to exist, it should probably depend only on this package.
"""

from .codec import payload_hash, stable_stringify
from .config import Config
from .exceptions import MandateRailError
from .journal import Journal, JournalEventType
from .time import parse_dt, to_iso, utc_now

__all__ = [
    "Config",
    "Journal",
    "JournalEventType",
    "MandateRailError",
    "payload_hash",
    "stable_stringify",
    "parse_dt",
    "to_iso",
    "utc_now",
]
