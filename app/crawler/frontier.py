"""
Priority frontier of pending page visits for one crawl session.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass

# Lower value pops first.
PRIORITY_CONTINUATION = 0
PRIORITY_DEFAULT = 10


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    page_number: int = 1
    priority: int = PRIORITY_DEFAULT


class Frontier:
    """
    Heap ordered by (priority, insertion order). Not thread-safe; the owning
    session serializes access.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, FrontierEntry]] = []
        self._counter = itertools.count()

    def push(self, entry: FrontierEntry) -> None:
        heapq.heappush(self._heap, (entry.priority, next(self._counter), entry))

    def pop(self) -> FrontierEntry | None:
        if not self._heap:
            return None
        _, _, entry = heapq.heappop(self._heap)
        return entry

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)
