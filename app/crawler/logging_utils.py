"""
Structured logging helpers for crawl sessions and the job scheduler.
"""

from __future__ import annotations

import json
import logging
from typing import Any

_MAX_ERROR_LENGTH = 500


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact JSON.
    """

    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


def short_error(exc: BaseException) -> str:
    """
    Render an exception as `Type: message`, clipped for log lines.
    """

    text = f"{type(exc).__name__}: {exc}"
    if len(text) > _MAX_ERROR_LENGTH:
        return text[: _MAX_ERROR_LENGTH - 3] + "..."
    return text
