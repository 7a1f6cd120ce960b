from __future__ import annotations

import logging
import mimetypes
from pathlib import PurePosixPath
from urllib.parse import urlparse

from ..internal_core.audit import redact_url
from ..provider.base import VoiceProvider
from ..storage.base import BlobStore

logger = logging.getLogger(__name__)

_DEFAULT_SUFFIX = ".mp4"
_KNOWN_SUFFIXES = {".mp4", ".m4a", ".mp3", ".wav", ".webm", ".ogg"}


def merged_audio_suffix(signed_url: str) -> str:
    suffix = PurePosixPath(urlparse(signed_url).path).suffix.lower()
    return suffix if suffix in _KNOWN_SUFFIXES else _DEFAULT_SUFFIX


def merged_audio_path(session_id: str, chat_id: str, suffix: str = _DEFAULT_SUFFIX) -> str:
    return f"conversations/{session_id}/complete-audio-{chat_id}{suffix}"


class MergedAudioArchiver:
    """
    Copy the provider's merged recording into our own bucket.

    Signed provider URLs expire; the stored public URL does not, so turn
    retries keep working after the signature lapses.
    """

    def __init__(self, provider: VoiceProvider, blob_store: BlobStore):
        self._provider = provider
        self._blobs = blob_store

    def archive(self, session_id: str, chat_id: str, signed_url: str) -> str:
        suffix = merged_audio_suffix(signed_url)
        path = merged_audio_path(session_id, chat_id, suffix)
        content_type = mimetypes.guess_type(f"x{suffix}")[0] or "audio/mp4"
        data = self._provider.download(signed_url)
        self._blobs.upload(path, data, content_type)
        url = self._blobs.get_public_url(path)
        logger.info(
            "merged_audio_archived session_id=%s chat_id=%s bytes=%s source=%s",
            session_id,
            chat_id,
            len(data),
            redact_url(signed_url),
        )
        return url
