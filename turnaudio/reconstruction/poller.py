from __future__ import annotations

import logging
import time
from threading import RLock
from typing import Callable, Dict, Optional

from ..internal_core import audit
from ..internal_core.audit import redact_url
from ..internal_core.cancel import CancelToken
from ..internal_core.contracts import PollOutcome, ReconstructionJob
from ..internal_core.conversation_store import ConversationStore
from ..internal_core.errors import MalformedProviderResponse, ProviderError, StorageError
from ..provider.base import VoiceProvider
from .archive import MergedAudioArchiver

logger = logging.getLogger(__name__)

# Signed URLs closer than this to expiry are not served from cache.
URL_EXPIRY_MARGIN_MS = 60_000

# Mirrored into `Conversation.status` when a poll loop is cancelled.
CANCELLED_STATUS = "CANCELLED"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ReconstructionPoller:
    def __init__(
        self,
        provider: VoiceProvider,
        store: ConversationStore,
        sleep: Optional[Callable[[float], None]] = None,
        archiver: Optional[MergedAudioArchiver] = None,
    ):
        self._provider = provider
        self._store = store
        self._sleep = sleep
        self._archiver = archiver
        self._lock = RLock()
        self._jobs: Dict[str, ReconstructionJob] = {}
        self._archived: Dict[str, str] = {}

    def job(self, chat_id: str) -> Optional[ReconstructionJob]:
        with self._lock:
            return self._jobs.get(chat_id)

    def _remember(self, job: ReconstructionJob) -> None:
        with self._lock:
            self._jobs[job.external_chat_id] = job

    def cached_url(self, chat_id: str) -> Optional[str]:
        job = self.job(chat_id)
        if job is None or job.status != "COMPLETE" or not job.signed_audio_url:
            return None
        if job.expires_at_ms is not None and job.expires_at_ms - URL_EXPIRY_MARGIN_MS <= _now_ms():
            return None
        return job.signed_audio_url

    def stored_url(self, chat_id: str) -> Optional[str]:
        with self._lock:
            return self._archived.get(chat_id)

    def start(self, chat_id: str) -> ReconstructionJob:
        """Submit the build request; returns the provider's current view without waiting."""
        reported = self._provider.start_reconstruction(chat_id)
        job = ReconstructionJob(external_chat_id=chat_id).advance(
            reported.status, reported.signed_audio_url, reported.expires_at_ms
        )
        self._remember(job)
        logger.info("reconstruction_submitted chat_id=%s status=%s", chat_id, job.status)
        return job

    def check_status(self, chat_id: str) -> Optional[ReconstructionJob]:
        """One status request. Returns None when the provider could not be reached."""
        try:
            job = self._provider.get_reconstruction_status(chat_id)
        except MalformedProviderResponse:
            raise
        except ProviderError as exc:
            logger.warning("reconstruction_status_failed chat_id=%s code=%s error=%s", chat_id, exc.code, exc.message)
            return None
        if job.status == "COMPLETE":
            self._remember(job)
        return job

    def _mirror_status(self, session_id: str, status: str) -> None:
        try:
            self._store.update_conversation(session_id, status=status)
        except Exception:
            logger.warning("status_mirror_failed session_id=%s status=%s", session_id, status, exc_info=True)

    def _archive(self, session_id: str, job: ReconstructionJob) -> Optional[str]:
        chat_id = job.external_chat_id
        existing = self.stored_url(chat_id)
        if existing or self._archiver is None or not job.signed_audio_url:
            return existing
        try:
            url = self._archiver.archive(session_id, chat_id, job.signed_audio_url)
        except (ProviderError, StorageError) as exc:
            logger.warning("merged_audio_archive_failed session_id=%s chat_id=%s error=%s", session_id, chat_id, exc.message)
            audit.log_event(self._store, session_id, "AUDIO_ARCHIVED", "ARCHIVE_FAILED", exc.message)
            return None
        with self._lock:
            self._archived[chat_id] = url
        audit.log_event(self._store, session_id, "AUDIO_ARCHIVED", "ARCHIVED", f"chat_id={chat_id} url={redact_url(url)}")
        return url

    def record_complete(self, session_id: str, job: ReconstructionJob) -> Optional[str]:
        """
        Persist a COMPLETE job before anyone acts on it.

        Stores the archived copy's URL when archiving succeeds, else the signed
        URL. Returns the archived URL (or None). Store failures propagate.
        """
        self._remember(job)
        stored = self._archive(session_id, job)
        try:
            self._store.update_conversation(
                session_id,
                external_chat_id=job.external_chat_id,
                status="COMPLETE",
                audio_url=stored or job.signed_audio_url,
            )
        except Exception as exc:
            logger.error(
                "reconstruction_persist_failed session_id=%s chat_id=%s error=%s",
                session_id,
                job.external_chat_id,
                exc,
            )
            audit.log_event(self._store, session_id, "ERROR", "PERSIST_COMPLETE_FAILED", str(exc))
            raise
        audit.log_event(
            self._store,
            session_id,
            "RECONSTRUCTION_COMPLETE",
            "COMPLETE",
            f"chat_id={job.external_chat_id} url={redact_url(stored or job.signed_audio_url)}",
        )
        return stored

    def _wait(self, seconds: float, cancel: CancelToken) -> bool:
        if self._sleep is not None:
            self._sleep(seconds)
            return cancel.cancelled
        return cancel.wait(seconds)

    def poll_until_done(
        self,
        chat_id: str,
        session_id: str,
        max_attempts: int = 6,
        interval_ms: int = 5000,
        cancel: Optional[CancelToken] = None,
    ) -> PollOutcome:
        cancel = cancel or CancelToken()
        cached = self.cached_url(chat_id)
        if cached:
            logger.info("reconstruction_cache_hit chat_id=%s", chat_id)
            stored = self.record_complete(session_id, self.job(chat_id))
            return PollOutcome(
                success=True, status="COMPLETE", audio_url=cached, stored_audio_url=stored, attempts=0
            )

        job = ReconstructionJob(external_chat_id=chat_id, status="IN_PROGRESS")
        last_status: Optional[str] = None
        attempts = 0
        logger.info(
            "reconstruction_polling chat_id=%s max_attempts=%s interval_ms=%s",
            chat_id,
            max_attempts,
            interval_ms,
        )
        while attempts < max_attempts:
            if cancel.cancelled:
                break
            attempts += 1
            reported = self.check_status(chat_id)
            if reported is None:
                logger.info("reconstruction_attempt chat_id=%s attempt=%s status=unreachable", chat_id, attempts)
            else:
                job = job.advance(reported.status, reported.signed_audio_url, reported.expires_at_ms)
                logger.info("reconstruction_attempt chat_id=%s attempt=%s status=%s", chat_id, attempts, job.status)
                if job.status != last_status and job.status != "COMPLETE":
                    last_status = job.status
                    self._mirror_status(session_id, job.status)
                    audit.log_event(
                        self._store,
                        session_id,
                        "RECONSTRUCTION_STATUS",
                        job.status,
                        f"chat_id={chat_id} attempt={attempts}",
                    )

                if job.status == "COMPLETE":
                    stored = self.record_complete(session_id, job)
                    return PollOutcome(
                        success=True,
                        status="COMPLETE",
                        audio_url=job.signed_audio_url,
                        stored_audio_url=stored,
                        attempts=attempts,
                    )
                if job.status == "FAILED":
                    self._remember(job)
                    audit.log_event(
                        self._store, session_id, "RECONSTRUCTION_FAILED", "FAILED", f"chat_id={chat_id}"
                    )
                    return PollOutcome(success=False, status="FAILED", attempts=attempts)

            if attempts < max_attempts and self._wait(interval_ms / 1000.0, cancel):
                break

        job = job.advance("TIMEOUT")
        self._remember(job)
        cancelled = cancel.cancelled
        self._mirror_status(session_id, CANCELLED_STATUS if cancelled else "TIMEOUT")
        audit.log_event(
            self._store,
            session_id,
            "RECONSTRUCTION_TIMEOUT",
            "CANCELLED" if cancelled else "TIMEOUT",
            f"chat_id={chat_id} attempts={attempts}",
        )
        logger.warning(
            "reconstruction_timeout chat_id=%s attempts=%s cancelled=%s", chat_id, attempts, cancelled
        )
        return PollOutcome(success=False, status="TIMEOUT", attempts=attempts, cancelled=cancelled)
