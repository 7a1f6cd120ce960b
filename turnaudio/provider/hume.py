from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from ..internal_core.audit import redact_url
from ..internal_core.contracts import ChatSummary, ReconstructionJob
from ..internal_core.errors import MalformedProviderResponse, ProviderError
from .base import VoiceProvider, normalize_job_status

logger = logging.getLogger(__name__)


class HumeProvider(VoiceProvider):
    """
    Hume EVI chat history + audio reconstruction client.

    `GET /v0/evi/chats/{id}/audio` both triggers a reconstruction and reports
    its progress, so `start_reconstruction` and `get_reconstruction_status`
    share one request.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.hume.ai",
        timeout_sec: float = 30.0,
        page_size: int = 50,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ProviderError("MISSING_API_KEY", "HUME_API_KEY is required for audio reconstruction", "hume")
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = timeout_sec
        self._page_size = page_size
        self._session = session or requests.Session()
        self._headers = {"X-Hume-Api-Key": api_key, "Accept": "application/json"}

    def name(self) -> str:
        return "hume"

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.get(
                url, headers=self._headers, params=params, timeout=self._timeout_sec
            )
        except requests.RequestException as exc:
            raise ProviderError("NETWORK_ERROR", f"GET {path} failed: {exc}", "hume") from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP_{response.status_code}",
                f"GET {path} returned {response.status_code}: {response.text[:200]}",
                "hume",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedProviderResponse(f"GET {path} returned non-JSON body", origin="hume") from exc
        if not isinstance(payload, dict):
            raise MalformedProviderResponse(f"GET {path} returned {type(payload).__name__}", origin="hume")
        return payload

    def list_recent_chats(self) -> List[ChatSummary]:
        payload = self._get_json(
            "/v0/evi/chats",
            params={"page_size": self._page_size, "page_number": 0, "ascending_order": "false"},
        )
        page = payload.get("chats_page")
        if page is None:
            return []
        if not isinstance(page, list):
            raise MalformedProviderResponse("chats_page is not a list", origin="hume")
        chats: List[ChatSummary] = []
        for item in page:
            if not isinstance(item, dict) or "id" not in item or "start_timestamp" not in item:
                raise MalformedProviderResponse(f"chat entry missing id/start_timestamp: {item!r}"[:200], origin="hume")
            chats.append(
                ChatSummary(
                    id=str(item["id"]),
                    start_timestamp_ms=int(item["start_timestamp"]),
                    status=item.get("status"),
                )
            )
        logger.info("hume_chats_listed count=%s", len(chats))
        return chats

    def _job_from_payload(self, chat_id: str, payload: Dict[str, Any]) -> ReconstructionJob:
        status = normalize_job_status(payload.get("status"), "hume")
        url = payload.get("signed_audio_url") or None
        expires = payload.get("signed_url_expiration_timestamp_millis")
        if status == "COMPLETE" and not url:
            raise MalformedProviderResponse(
                f"chat_id={chat_id} reported COMPLETE without signed_audio_url", origin="hume"
            )
        return ReconstructionJob(
            external_chat_id=chat_id,
            status=status,
            signed_audio_url=url if status == "COMPLETE" else None,
            expires_at_ms=int(expires) if (status == "COMPLETE" and expires is not None) else None,
        )

    def start_reconstruction(self, chat_id: str) -> ReconstructionJob:
        job = self._job_from_payload(chat_id, self._get_json(f"/v0/evi/chats/{chat_id}/audio"))
        logger.info("hume_reconstruction_started chat_id=%s status=%s", chat_id, job.status)
        return job

    def get_reconstruction_status(self, chat_id: str) -> ReconstructionJob:
        return self._job_from_payload(chat_id, self._get_json(f"/v0/evi/chats/{chat_id}/audio"))

    def download(self, url: str) -> bytes:
        try:
            response = self._session.get(url, timeout=self._timeout_sec)
        except requests.RequestException as exc:
            raise ProviderError("DOWNLOAD_FAILED", f"download failed: {exc}", "hume") from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP_{response.status_code}",
                f"download of {redact_url(url)} returned {response.status_code}",
                "hume",
            )
        logger.info("hume_audio_downloaded bytes=%s url=%s", len(response.content), redact_url(url))
        return response.content
