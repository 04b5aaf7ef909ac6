"""
Structured logging helpers for background jobs and pipeline steps.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact JSON; ``None`` fields are dropped.
    """

    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **{key: value for key, value in fields.items() if value is not None}}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


def elapsed_ms(started: float) -> float:
    """
    Milliseconds since a ``time.perf_counter()`` reading, rounded to 0.01.
    """

    return round((time.perf_counter() - started) * 1000.0, 2)
