"""
Page driver protocol and the bounded pool of driver contexts.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Protocol

from app.crawler.errors import CrawlCancelledError
from app.crawler.logging_utils import log_event, short_error

logger = logging.getLogger(__name__)

_ACQUIRE_POLL_SECONDS = 0.2
_XPATH_PREFIXES = ("/", "(", "xpath=")


def is_xpath_selector(selector: str) -> bool:
    return selector.strip().startswith(_XPATH_PREFIXES)


class PageDriver(Protocol):
    """
    One page context: a browser tab, or a document holder for static HTML.

    Every interaction raises a `PageFailure` subclass on failure.
    """

    def navigate(self, url: str) -> None:
        ...

    def wait_for_selector(self, selector: str, timeout_seconds: float) -> bool:
        """Return True once `selector` is attached, False after the timeout."""
        ...

    def query_links(self, selector: str) -> list[str]:
        """Raw hrefs of elements matching `selector`, in document order."""
        ...

    def read_text(self, selector: str) -> str | None:
        ...

    def read_attribute(self, selector: str, name: str) -> str | None:
        ...

    def read_text_near_label(self, label: str) -> str | None:
        """Text of the cell adjacent to (or enclosing) an element containing `label`."""
        ...

    def exists(self, selector: str) -> bool:
        ...

    def click(self, selector: str) -> None:
        ...

    def current_url(self) -> str:
        ...

    def content(self) -> str:
        ...

    def close(self) -> None:
        ...


class PageContextPool:
    """
    Bounded pool of page driver contexts shared by every active session.

    A context is held for exactly one page operation.
    """

    def __init__(self, *, driver_factory: Callable[[], PageDriver], size: int) -> None:
        self._driver_factory = driver_factory
        self._size = max(1, size)
        self._slots = threading.BoundedSemaphore(self._size)
        self._idle: list[PageDriver] = []
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return self._size

    @contextmanager
    def acquire(self, cancel_event: threading.Event | None = None) -> Iterator[PageDriver]:
        while not self._slots.acquire(timeout=_ACQUIRE_POLL_SECONDS):
            if cancel_event is not None and cancel_event.is_set():
                raise CrawlCancelledError("Cancelled while waiting for a page context")

        try:
            with self._lock:
                driver = self._idle.pop() if self._idle else None
            if driver is None:
                driver = self._driver_factory()
        except BaseException:
            self._slots.release()
            raise

        try:
            yield driver
        finally:
            with self._lock:
                self._idle.append(driver)
            self._slots.release()

    def close(self) -> None:
        with self._lock:
            drivers, self._idle = self._idle, []
        for driver in drivers:
            try:
                driver.close()
            except Exception as exc:
                log_event(logger, logging.WARNING, "page_context_close_failed", error=short_error(exc))
