"""
Local filesystem blob store.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from app.crawler.errors import StorageFailure
from app.crawler.storage.base import BlobStore


class FileSystemBlobStore(BlobStore):
    """
    Writes each blob atomically under `root_dir/<key>`.

    Every OS-level write error surfaces as StorageFailure.
    """

    def __init__(self, root_dir: str | Path) -> None:
        self._root_dir = Path(root_dir)

    def put(self, *, key: str, payload: bytes, content_type: str | None = None) -> str:
        target = self._resolve(key)
        tmp_path = target.with_name(f"{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as handle:
                handle.write(payload)
            tmp_path.replace(target)
        except OSError as exc:
            raise StorageFailure(f"Failed to write blob {key}: {exc}") from exc
        finally:
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError:
                pass
        return key

    def read(self, key: str) -> bytes:
        return self._resolve(key).read_bytes()

    def _resolve(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise StorageFailure(f"Invalid blob key: {key!r}")
        return self._root_dir.joinpath(*relative.parts)
