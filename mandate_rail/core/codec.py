"""mandate_rail.core.codec

Canonical JSON and payload hashing.

Two payloads that are deep-equal serialize to the same bytes regardless of
key insertion order. Signatures and chain links are computed over these
bytes, so this module is the root of every hash in the system.

Rules:
- object keys sorted lexicographically, arrays keep their order
- `None`, NaN and infinities serialize as `null`
- integral floats serialize as integers (`150.0` -> `150`)
- no insignificant whitespace, non-ASCII kept as UTF-8
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from mandate_rail.core.time import to_iso

HASH_PREFIX = "sha256:"


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        f = float(value)
        if not math.isfinite(f):
            return None
        if f.is_integer() and abs(f) < 2**53:
            return int(f)
        return f
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json", exclude_none=True))
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    raise TypeError(f"value of type {type(value).__name__} is not canonical-json serializable")


def stable_stringify(value: Any) -> str:
    """Serialize ``value`` to canonical JSON."""

    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def sha256_hex(data: str | bytes) -> str:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return hashlib.sha256(raw).hexdigest()


def payload_hash(payload: Any) -> str:
    """`sha256:<hex>` of the canonical JSON of ``payload``."""

    return HASH_PREFIX + sha256_hex(stable_stringify(payload))
