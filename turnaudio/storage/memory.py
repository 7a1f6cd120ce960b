from __future__ import annotations

from threading import RLock
from typing import Dict, Iterable, Optional, Tuple

from ..internal_core.errors import StorageError
from .base import BlobStore


class InMemoryBlobStore(BlobStore):
    def __init__(self, base_url: str = "memory://conversation-audio", fail_paths: Optional[Iterable[str]] = None):
        self._base_url = base_url.rstrip("/")
        self._lock = RLock()
        self._objects: Dict[str, Tuple[bytes, str]] = {}
        self.fail_paths = set(fail_paths or [])
        self.upload_calls = 0

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self.upload_calls += 1
            if path in self.fail_paths:
                raise StorageError("UPLOAD_FAILED", f"simulated upload failure for {path}", "memory")
            self._objects[path] = (bytes(data), content_type)

    def get_public_url(self, path: str) -> str:
        return f"{self._base_url}/{path}"

    def get(self, path: str) -> Optional[bytes]:
        with self._lock:
            item = self._objects.get(path)
        return item[0] if item else None

    def paths(self) -> list:
        with self._lock:
            return sorted(self._objects)
