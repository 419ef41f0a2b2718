"""
Blob store interface for raw product page content.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime


def generate_blob_key(now: datetime, *, prefix: str = "pages") -> str:
    """
    Time-ordered key with a random suffix, e.g. `pages/20261019/081502-3f9a1c2b7d4e`.
    """

    return f"{prefix}/{now.strftime('%Y%m%d')}/{now.strftime('%H%M%S')}-{uuid.uuid4().hex[:12]}"


class BlobStore(ABC):
    """
    Durable write of an opaque payload under a caller-supplied key.
    """

    @abstractmethod
    def put(self, *, key: str, payload: bytes, content_type: str | None = None) -> str:
        """
        Persist `payload` and return the key it is retrievable under.

        Raises StorageFailure when the write does not complete.
        """
