from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import reduce
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..internal_core import audit
from ..internal_core.cancel import CancelToken
from ..internal_core.contracts import (
    AudioSegmentRecord,
    PersistenceResult,
    TurnPersistOutcome,
    TurnSegment,
)
from ..internal_core.conversation_store import ConversationStore
from ..storage.base import BlobStore

logger = logging.getLogger(__name__)

CLIP_CONTENT_TYPE = "audio/wav"
CANCELLED_REASON = "cancelled before upload"


def segment_storage_path(session_id: str, turn_number: int, speaker: str) -> str:
    return f"conversations/{session_id}/turns/turn-{int(turn_number):04d}-{speaker}.wav"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _fold(outcomes: Sequence[TurnPersistOutcome]) -> PersistenceResult:
    def step(acc: Tuple[int, int, int], item: TurnPersistOutcome) -> Tuple[int, int, int]:
        uploaded, failed, db_records = acc
        if item.error is None:
            return uploaded + 1, failed, db_records + (1 if item.db_recorded else 0)
        return uploaded, failed + 1, db_records

    uploaded, failed, db_records = reduce(step, outcomes, (0, 0, 0))
    return PersistenceResult(
        success=not any(item.error == CANCELLED_REASON for item in outcomes),
        uploaded=uploaded,
        failed=failed,
        db_records=db_records,
        outcomes=sorted(outcomes, key=lambda o: (o.turn_number, o.speaker)),
    )


class AudioPersistenceService:
    """
    Upload extracted clips and upsert one `conversation_audio` row per
    (session, turn, speaker). Re-running overwrites the same object and row.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        store: ConversationStore,
        *,
        max_workers: int = 4,
        record_failed_turns: bool = True,
    ):
        self._blobs = blob_store
        self._store = store
        self._max_workers = max(1, int(max_workers))
        self._record_failed_turns = record_failed_turns

    def _already_uploaded(self, session_id: str) -> Optional[Set[Tuple[int, str]]]:
        try:
            rows = self._store.list_audio_segments(session_id)
        except Exception:
            logger.warning("existing_segments_lookup_failed session_id=%s", session_id, exc_info=True)
            return None
        return {(r.turn_number, r.speaker) for r in rows if r.processing_status == "uploaded"}

    def _record_failure(
        self,
        session_id: str,
        segment: TurnSegment,
        reason: str,
        uploaded_keys: Optional[Set[Tuple[int, str]]],
    ) -> None:
        # Never downgrade a row that a previous run already uploaded.
        if not self._record_failed_turns or uploaded_keys is None:
            return
        if (segment.turn_number, segment.speaker) in uploaded_keys:
            return
        record = AudioSegmentRecord(
            session_id=session_id,
            turn_number=segment.turn_number,
            speaker=segment.speaker,
            storage_path=segment_storage_path(session_id, segment.turn_number, segment.speaker),
            duration_ms=segment.duration_ms,
            processing_status="failed",
            error_reason=reason[:500],
            created_at=_utc_now(),
        )
        try:
            self._store.upsert_audio_segment(record)
        except Exception:
            logger.warning(
                "failed_turn_marker_not_written session_id=%s turn=%s",
                session_id,
                segment.turn_number,
                exc_info=True,
            )

    def persist_one(
        self,
        session_id: str,
        segment: TurnSegment,
        cancel: CancelToken,
        uploaded_keys: Optional[Set[Tuple[int, str]]] = None,
    ) -> TurnPersistOutcome:
        path = segment_storage_path(session_id, segment.turn_number, segment.speaker)
        if cancel.cancelled:
            return TurnPersistOutcome(
                turn_number=segment.turn_number, speaker=segment.speaker, error=CANCELLED_REASON
            )
        if not segment.ok:
            reason = segment.error_reason or "no audio extracted"
            self._record_failure(session_id, segment, reason, uploaded_keys)
            return TurnPersistOutcome(
                turn_number=segment.turn_number, speaker=segment.speaker, error=reason
            )

        try:
            self._blobs.upload(path, segment.audio_bytes or b"", CLIP_CONTENT_TYPE)
            url = self._blobs.get_public_url(path)
        except Exception as exc:
            logger.error("turn_upload_failed session_id=%s turn=%s error=%s", session_id, segment.turn_number, exc)
            reason = f"upload failed: {exc}"
            self._record_failure(session_id, segment, reason, uploaded_keys)
            return TurnPersistOutcome(
                turn_number=segment.turn_number, speaker=segment.speaker, storage_path=path, error=reason
            )

        record = AudioSegmentRecord(
            session_id=session_id,
            turn_number=segment.turn_number,
            speaker=segment.speaker,
            storage_path=path,
            audio_url=url,
            duration_ms=segment.duration_ms,
            byte_length=segment.byte_length,
            processing_status="uploaded",
            created_at=_utc_now(),
        )
        try:
            self._store.upsert_audio_segment(record)
        except Exception as exc:
            logger.error("turn_upsert_failed session_id=%s turn=%s error=%s", session_id, segment.turn_number, exc)
            return TurnPersistOutcome(
                turn_number=segment.turn_number,
                speaker=segment.speaker,
                uploaded=True,
                storage_path=path,
                audio_url=url,
                error=f"database upsert failed: {exc}",
            )
        logger.info("turn_persisted session_id=%s turn=%s speaker=%s", session_id, segment.turn_number, segment.speaker)
        return TurnPersistOutcome(
            turn_number=segment.turn_number,
            speaker=segment.speaker,
            uploaded=True,
            db_recorded=True,
            storage_path=path,
            audio_url=url,
        )

    def process(
        self,
        session_id: str,
        segments: Sequence[TurnSegment],
        cancel: Optional[CancelToken] = None,
        only_turns: Optional[Iterable[int]] = None,
    ) -> PersistenceResult:
        cancel = cancel or CancelToken()
        wanted = set(only_turns) if only_turns is not None else None
        selected: List[TurnSegment] = [
            s for s in segments if wanted is None or s.turn_number in wanted
        ]
        logger.info("turn_persistence_start session_id=%s segments=%s", session_id, len(selected))
        uploaded_keys = None
        if self._record_failed_turns and not cancel.cancelled:
            uploaded_keys = self._already_uploaded(session_id)

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            outcomes = list(
                pool.map(lambda s: self.persist_one(session_id, s, cancel, uploaded_keys), selected)
            )

        result = _fold(outcomes)
        audit.log_event(
            self._store,
            session_id,
            "PERSISTENCE_DONE",
            "PERSIST_OK" if result.failed == 0 else "PERSIST_PARTIAL",
            f"uploaded={result.uploaded} failed={result.failed} db_records={result.db_records}",
        )
        logger.info(
            "turn_persistence_done session_id=%s uploaded=%s failed=%s db_records=%s",
            session_id,
            result.uploaded,
            result.failed,
            result.db_records,
        )
        return result
