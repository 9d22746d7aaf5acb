"""mandate_rail.core.logging

Stdlib logging, configured once.

Messages are snake_case event names; context travels in `extra`.
With `json_output` every record becomes one JSON line.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

from mandate_rail.core.config import LoggingConfig

_RESERVED = set(vars(logging.LogRecord("x", 0, "x", 0, "", None, None))) | {"message", "asctime"}

_HANDLER_NAME = "mandate_rail"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k not in _RESERVED and not k.startswith("_"):
                out[k] = v
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, default=str, sort_keys=True)


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = [
            f"{k}={v}"
            for k, v in sorted(record.__dict__.items())
            if k not in _RESERVED and not k.startswith("_")
        ]
        return base if not extras else f"{base} {' '.join(extras)}"


def configure_logging(cfg: LoggingConfig) -> None:
    """Install (or replace) the package handler on the root logger."""

    root = logging.getLogger()
    for h in list(root.handlers):
        if h.get_name() == _HANDLER_NAME:
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if cfg.json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    root.addHandler(handler)
    root.setLevel(cfg.level.upper())
