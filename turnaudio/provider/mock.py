from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

from ..internal_core.contracts import ChatSummary, ReconstructionJob
from ..internal_core.errors import ProviderError
from .base import VoiceProvider, normalize_job_status

ScriptStep = Union[str, ReconstructionJob, Exception]


class MockVoiceProvider(VoiceProvider):
    """Scripted provider: each status request consumes the next script step."""

    def __init__(
        self,
        chats: Optional[Sequence[ChatSummary]] = None,
        status_script: Optional[Sequence[ScriptStep]] = None,
        audio: Optional[Dict[str, bytes]] = None,
        signed_url: str = "https://mock.invalid/merged.wav",
        expires_at_ms: Optional[int] = None,
    ) -> None:
        self._chats = list(chats or [])
        self._script: List[ScriptStep] = list(status_script or ["COMPLETE"])
        self._audio = dict(audio or {})
        self._signed_url = signed_url
        self._expires_at_ms = expires_at_ms
        self.start_calls = 0
        self.status_calls = 0
        self.download_calls = 0
        self.downloaded_urls: List[str] = []

    def name(self) -> str:
        return "mock"

    def _step(self, chat_id: str, index: int) -> ReconstructionJob:
        step = self._script[min(index, len(self._script) - 1)]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ReconstructionJob):
            return step
        status = normalize_job_status(step, "mock")
        return ReconstructionJob(
            external_chat_id=chat_id,
            status=status,
            signed_audio_url=self._signed_url if status == "COMPLETE" else None,
            expires_at_ms=self._expires_at_ms if status == "COMPLETE" else None,
        )

    def list_recent_chats(self) -> List[ChatSummary]:
        return list(self._chats)

    def start_reconstruction(self, chat_id: str) -> ReconstructionJob:
        self.start_calls += 1
        return ReconstructionJob(external_chat_id=chat_id, status="PENDING")

    def get_reconstruction_status(self, chat_id: str) -> ReconstructionJob:
        index = self.status_calls
        self.status_calls += 1
        return self._step(chat_id, index)

    def download(self, url: str) -> bytes:
        self.download_calls += 1
        self.downloaded_urls.append(url)
        data = self._audio.get(url)
        if data is None:
            raise ProviderError("DOWNLOAD_FAILED", f"no mock audio for {url}", "mock")
        return data
