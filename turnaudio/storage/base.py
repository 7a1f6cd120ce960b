from __future__ import annotations

from abc import ABC, abstractmethod


class BlobStore(ABC):
    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> None:
        """Store `data` at `path`, overwriting any previous object."""

    @abstractmethod
    def get_public_url(self, path: str) -> str: ...
