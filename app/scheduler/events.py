"""
Job state-change observers.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from app.crawler.logging_utils import log_event

logger = logging.getLogger(__name__)


class JobEventListener(Protocol):
    def on_state_change(
        self,
        job_id: uuid.UUID,
        from_state: str | None,
        to_state: str,
    ) -> None:
        """Called synchronously after each persisted transition. `from_state` is None on enqueue."""
        ...


class LoggingJobEventListener:
    def on_state_change(
        self,
        job_id: uuid.UUID,
        from_state: str | None,
        to_state: str,
    ) -> None:
        log_event(
            logger,
            logging.INFO,
            "job_state_changed",
            job_id=str(job_id),
            from_state=from_state,
            to_state=to_state,
        )
