from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..internal_core.contracts import ChatSummary, ReconstructionJob
from ..internal_core.errors import MalformedProviderResponse

_PROVIDER_STATUS_MAP = {
    "QUEUED": "PENDING",
    "PENDING": "PENDING",
    "PROCESSING": "IN_PROGRESS",
    "IN_PROGRESS": "IN_PROGRESS",
    "COMPLETE": "COMPLETE",
    "COMPLETED": "COMPLETE",
    "FAILED": "FAILED",
    "ERROR": "FAILED",
}


def normalize_job_status(raw: object, provider_name: str) -> str:
    key = str(raw or "").strip().upper()
    status = _PROVIDER_STATUS_MAP.get(key)
    if status is None:
        raise MalformedProviderResponse(
            f"Unknown reconstruction status {raw!r}", origin=provider_name
        )
    return status


class VoiceProvider(ABC):
    @abstractmethod
    def list_recent_chats(self) -> List[ChatSummary]: ...

    @abstractmethod
    def start_reconstruction(self, chat_id: str) -> ReconstructionJob: ...

    @abstractmethod
    def get_reconstruction_status(self, chat_id: str) -> ReconstructionJob: ...

    @abstractmethod
    def download(self, url: str) -> bytes: ...

    @abstractmethod
    def name(self) -> str: ...
