from __future__ import annotations

"""
Session-level orchestration: resolve -> reconstruct -> poll -> segment -> persist.

Design intent:
- One short-lived, cancellable run per session with explicit collaborators.
- Every expected outcome is a typed result; only unexpected failures raise.
- Per-turn failures stay enumerable so callers can retry just those turns.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .internal_core import audit
from .internal_core.audit import redact_url
from .internal_core.cancel import CancelToken
from .internal_core.config import PipelineConfig
from .internal_core.contracts import (
    ChatMatch,
    ExtractionResult,
    PersistenceResult,
    PipelineReport,
    PollOutcome,
    ReconstructionJob,
    ReconstructStartResult,
    Turn,
    TurnSegment,
)
from .internal_core.conversation_store import ConversationStore
from .internal_core.errors import ProviderError
from .persistence.service import AudioPersistenceService
from .provider import build_provider
from .provider.base import VoiceProvider
from .reconstruction.archive import MergedAudioArchiver
from .reconstruction.poller import ReconstructionPoller
from .reconstruction.resolver import ChatIdentityResolver
from .segmentation.segmenter import TurnAudioSegmenter
from .storage import build_stores
from .storage.base import BlobStore

logger = logging.getLogger(__name__)


class SessionAudioPipeline:
    def __init__(
        self,
        cfg: PipelineConfig,
        store: ConversationStore,
        provider: VoiceProvider,
        blob_store: BlobStore,
        *,
        sleep=None,
    ):
        self.cfg = cfg
        self.store = store
        self.provider = provider
        self.blob_store = blob_store
        self.resolver = ChatIdentityResolver(provider, tolerance_ms=cfg.TURNAUDIO_MATCH_TOLERANCE_MS)
        archiver = MergedAudioArchiver(provider, blob_store) if cfg.TURNAUDIO_ARCHIVE_MERGED_AUDIO else None
        self.poller = ReconstructionPoller(provider, store, sleep=sleep, archiver=archiver)
        self.segmenter = TurnAudioSegmenter(
            provider,
            cfg.tmp_dir_path(),
            sample_rate=cfg.TURNAUDIO_SAMPLE_RATE_HZ,
            max_workers=cfg.TURNAUDIO_MAX_WORKERS,
            max_audio_seconds=cfg.TURNAUDIO_MAX_AUDIO_SECONDS,
        )
        self.persistence = AudioPersistenceService(
            blob_store,
            store,
            max_workers=cfg.TURNAUDIO_MAX_WORKERS,
            record_failed_turns=cfg.TURNAUDIO_PERSIST_FAILED_TURNS,
        )

    @classmethod
    def from_config(cls, cfg: PipelineConfig) -> "SessionAudioPipeline":
        store, blob_store = build_stores(cfg)
        return cls(cfg, store, build_provider(cfg), blob_store)

    def new_cancel_token(self) -> CancelToken:
        return CancelToken(self.cfg.TURNAUDIO_PIPELINE_DEADLINE_SEC)

    # -- core operations -------------------------------------------------

    def resolve_chat(self, session_id: str) -> Optional[ChatMatch]:
        conversation = self.store.get_conversation(session_id)
        if conversation.external_chat_id:
            stored = ChatMatch(
                chat_id=conversation.external_chat_id,
                distance_ms=conversation.chat_match_distance_ms or 0,
                low_confidence=conversation.chat_match_low_confidence,
                source="stored",
            )
            if stored.low_confidence:
                logger.warning(
                    "chat_id_stored_low_confidence session_id=%s chat_id=%s distance_ms=%s",
                    session_id,
                    stored.chat_id,
                    stored.distance_ms,
                )
            else:
                logger.info("chat_id_stored session_id=%s chat_id=%s", session_id, stored.chat_id)
            return stored

        match = self.resolver.resolve(conversation.started_at)
        if match is None:
            audit.log_event(self.store, session_id, "CHAT_RESOLUTION_EMPTY", "NO_CANDIDATES", "provider returned no chats")
            return None
        self.store.update_conversation(
            session_id,
            external_chat_id=match.chat_id,
            chat_match_distance_ms=match.distance_ms,
            chat_match_low_confidence=match.low_confidence,
        )
        audit.log_event(
            self.store,
            session_id,
            "CHAT_RESOLVED",
            "LOW_CONFIDENCE" if match.low_confidence else "MATCHED",
            f"chat_id={match.chat_id} distance_ms={match.distance_ms}",
        )
        return match

    def reconstruct_audio(self, session_id: str) -> ReconstructStartResult:
        match = self.resolve_chat(session_id)
        if match is None:
            return ReconstructStartResult(
                success=False,
                status="resolution_empty",
                error="Could not find a matching provider chat for session",
            )
        try:
            job = self.poller.start(match.chat_id)
        except ProviderError as exc:
            logger.error("reconstruction_submit_failed session_id=%s chat_id=%s error=%s", session_id, match.chat_id, exc.message)
            audit.log_event(self.store, session_id, "ERROR", exc.code, exc.message)
            return ReconstructStartResult(
                success=False,
                chat_id=match.chat_id,
                status="ERROR",
                low_confidence=match.low_confidence,
                error=f"Failed to initiate audio reconstruction: {exc.message}",
            )

        audit.log_event(
            self.store, session_id, "RECONSTRUCTION_STARTED", job.status, f"chat_id={match.chat_id}"
        )
        if job.status == "COMPLETE":
            self.poller.record_complete(session_id, job)
        else:
            self.store.update_conversation(session_id, status=job.status)
        return ReconstructStartResult(
            success=job.status != "FAILED",
            chat_id=match.chat_id,
            status=job.status,
            audio_url=job.signed_audio_url,
            low_confidence=match.low_confidence,
        )

    def poll_reconstruction(
        self,
        chat_id: str,
        session_id: str,
        max_attempts: Optional[int] = None,
        interval_ms: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PollOutcome:
        return self.poller.poll_until_done(
            chat_id,
            session_id,
            max_attempts=self.cfg.TURNAUDIO_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts,
            interval_ms=self.cfg.TURNAUDIO_POLL_INTERVAL_MS if interval_ms is None else interval_ms,
            cancel=cancel,
        )

    def check_status(self, chat_id: str) -> Optional[ReconstructionJob]:
        return self.poller.check_status(chat_id)

    def extract_turns(
        self,
        session_id: str,
        audio_url: str,
        turns: Sequence[Turn],
        conversation_started_at: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExtractionResult:
        result = self.segmenter.extract(session_id, audio_url, turns, conversation_started_at, cancel=cancel)
        audit.log_event(
            self.store,
            session_id,
            "EXTRACTION_DONE",
            "EXTRACT_OK" if result.success else "EXTRACT_FAILED",
            f"extracted={result.extracted} failed={result.failed} url={redact_url(audio_url)}",
        )
        return result

    def persist_segments(
        self,
        session_id: str,
        segments: Sequence[TurnSegment],
        cancel: Optional[CancelToken] = None,
        only_turns: Optional[Iterable[int]] = None,
    ) -> PersistenceResult:
        return self.persistence.process(session_id, segments, cancel=cancel, only_turns=only_turns)

    # -- end to end ------------------------------------------------------

    def _cancelled(self, session_id: str, report: PipelineReport) -> PipelineReport:
        audit.log_event(self.store, session_id, "PIPELINE_CANCELLED", "CANCELLED", f"chat_id={report.chat_id}")
        report.status = "cancelled"
        return report

    def process_session(self, session_id: str, cancel: Optional[CancelToken] = None) -> PipelineReport:
        cancel = cancel or self.new_cancel_token()
        report = PipelineReport(session_id=session_id, status="failed")

        match = self.resolve_chat(session_id)
        if match is None:
            report.status = "resolution_empty"
            return report
        report.chat_id = match.chat_id
        report.low_confidence_match = match.low_confidence
        if match.low_confidence:
            report.warnings.append(f"chat match is {match.distance_ms}ms from conversation start")
        if cancel.cancelled:
            return self._cancelled(session_id, report)

        audio_url = self.poller.cached_url(match.chat_id)
        if audio_url is None:
            try:
                job = self.poller.start(match.chat_id)
            except ProviderError as exc:
                report.error = f"Failed to initiate audio reconstruction: {exc.message}"
                audit.log_event(self.store, session_id, "ERROR", exc.code, exc.message)
                return report
            audit.log_event(self.store, session_id, "RECONSTRUCTION_STARTED", job.status, f"chat_id={match.chat_id}")
            if job.status == "COMPLETE":
                audio_url = job.signed_audio_url
                report.stored_audio_url = self.poller.record_complete(session_id, job)
                report.job_status = "COMPLETE"
            elif job.status == "FAILED":
                report.job_status = "FAILED"
                report.error = "provider reported reconstruction failure"
                return report
            else:
                outcome = self.poll_reconstruction(match.chat_id, session_id, cancel=cancel)
                report.job_status = outcome.status
                if outcome.status == "FAILED":
                    report.error = "provider reported reconstruction failure"
                    return report
                if outcome.status == "TIMEOUT":
                    if outcome.cancelled:
                        return self._cancelled(session_id, report)
                    report.status = "timeout"
                    report.error = f"reconstruction not complete after {outcome.attempts} attempts"
                    return report
                audio_url = outcome.audio_url
                report.stored_audio_url = outcome.stored_audio_url
        else:
            report.job_status = "COMPLETE"
            report.stored_audio_url = self.poller.record_complete(session_id, self.poller.job(match.chat_id))
        report.audio_url = audio_url
        if cancel.cancelled:
            return self._cancelled(session_id, report)

        conversation = self.store.get_conversation(session_id)
        turns = self.store.list_turns(session_id)
        extraction = self.extract_turns(session_id, audio_url or "", turns, conversation.started_at, cancel=cancel)
        report.extracted = extraction.extracted
        report.warnings.extend(extraction.warnings)
        if not extraction.success:
            report.failed = extraction.failed
            report.failed_turns = extraction.failed_turns
            report.error = extraction.error
            return report

        persisted = self.persist_segments(session_id, extraction.segments, cancel=cancel)
        report.uploaded = persisted.uploaded
        report.failed = persisted.failed
        report.db_records = persisted.db_records
        failed_turns: List[int] = sorted(set(extraction.failed_turns) | set(persisted.failed_turns))
        report.failed_turns = failed_turns
        if not persisted.success:
            return self._cancelled(session_id, report)
        report.status = "complete" if not failed_turns else "partial"
        logger.info(
            "session_processed session_id=%s status=%s extracted=%s uploaded=%s failed=%s",
            session_id,
            report.status,
            report.extracted,
            report.uploaded,
            report.failed,
        )
        return report
