from __future__ import annotations

"""
Supabase-backed conversation store and blob store.

Design intent:
- Read conversations and their transcript turns from the `conversations` table.
- Mirror chat id / reconstruction status / merged audio URL into `metadata`.
- Upsert per-turn rows into `conversation_audio` on the unique triple.
"""

import logging
from datetime import datetime
from threading import RLock
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from ..internal_core.config import PipelineConfig
from ..internal_core.contracts import AudioSegmentRecord, AuditEvent, Conversation, Turn
from ..internal_core.conversation_store import ConversationStore, check_update_fields
from ..internal_core.errors import ConversationNotFound, StorageError
from ..segmentation.timing import turns_from_transcript
from .base import BlobStore

logger = logging.getLogger(__name__)

# Conversation fields -> keys inside `conversations.metadata`.
_METADATA_KEYS = {
    "external_chat_id": "hume_chat_id",
    "status": "audio_reconstruction_status",
    "audio_url": "complete_audio_url",
    "chat_match_distance_ms": "hume_chat_match_distance_ms",
    "chat_match_low_confidence": "hume_chat_match_low_confidence",
}

# Older rows use the pending/processing/completed lifecycle.
_READ_STATUS = {
    "uploaded": "uploaded",
    "completed": "uploaded",
    "complete": "uploaded",
    "failed": "failed",
}


def _read_processing_status(raw: Any) -> str:
    return _READ_STATUS.get(str(raw or "").strip().lower(), "failed")


def create_supabase_client(cfg: PipelineConfig) -> Client:
    if not cfg.supabase_configured:
        raise StorageError(
            "MISSING_CREDENTIALS",
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required",
            "supabase",
        )
    return create_client(cfg.SUPABASE_URL, cfg.SUPABASE_SERVICE_ROLE_KEY)


def _first_row(response: Any) -> Optional[Dict[str, Any]]:
    rows = getattr(response, "data", None) if response is not None else None
    if isinstance(rows, list):
        return rows[0] if rows else None
    if isinstance(rows, dict):
        return rows
    return None


class SupabaseBlobStore(BlobStore):
    def __init__(self, client: Client, bucket: str = "conversation-audio"):
        self._client = client
        self._bucket = bucket

    def upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.storage.from_(self._bucket).upload(
                path,
                data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as exc:
            raise StorageError("UPLOAD_FAILED", f"upload {path} failed: {exc}", "supabase") from exc

    def get_public_url(self, path: str) -> str:
        url = self._client.storage.from_(self._bucket).get_public_url(path)
        return str(url).rstrip("?")


class SupabaseConversationStore(ConversationStore):
    """Audit events are kept process-local; the datastore only holds durable rows."""

    def __init__(self, client: Client):
        self._client = client
        self._lock = RLock()
        self._audit: Dict[str, List[AuditEvent]] = {}

    def _conversation_row(self, session_id: str) -> Dict[str, Any]:
        response = (
            self._client.table("conversations")
            .select("id, session_id, started_at, metadata, conversation_data")
            .eq("session_id", session_id)
            .limit(1)
            .execute()
        )
        row = _first_row(response)
        if row is None:
            raise ConversationNotFound(session_id)
        return row

    def _stored_chat_id(self, session_id: str) -> Optional[str]:
        response = (
            self._client.table("conversation_chat_metadata")
            .select("hume_chat_id")
            .eq("session_id", session_id)
            .limit(1)
            .execute()
        )
        row = _first_row(response)
        return str(row["hume_chat_id"]) if row and row.get("hume_chat_id") else None

    def get_conversation(self, session_id: str) -> Conversation:
        row = self._conversation_row(session_id)
        metadata = row.get("metadata") or {}
        chat_id = metadata.get("hume_chat_id")
        if not chat_id:
            try:
                chat_id = self._stored_chat_id(session_id)
            except Exception:
                logger.warning("chat_metadata_lookup_failed session_id=%s", session_id, exc_info=True)
                chat_id = None
        return Conversation(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            started_at=row["started_at"],
            external_chat_id=chat_id,
            status=metadata.get("audio_reconstruction_status"),
            audio_url=metadata.get("complete_audio_url"),
            chat_match_distance_ms=metadata.get("hume_chat_match_distance_ms"),
            chat_match_low_confidence=bool(metadata.get("hume_chat_match_low_confidence")),
        )

    def list_turns(self, session_id: str) -> List[Turn]:
        row = self._conversation_row(session_id)
        data = row.get("conversation_data") or {}
        started_at = row["started_at"]
        if isinstance(started_at, str):
            started_at = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
        turns = turns_from_transcript(data.get("turns") or [], started_at)
        return sorted(turns, key=lambda t: t.turn_number)

    def update_conversation(self, session_id: str, **fields: Any) -> Conversation:
        check_update_fields(fields)
        row = self._conversation_row(session_id)
        metadata = dict(row.get("metadata") or {})
        for name, value in fields.items():
            metadata[_METADATA_KEYS[name]] = value
        try:
            self._client.table("conversations").update({"metadata": metadata}).eq(
                "session_id", session_id
            ).execute()
        except Exception as exc:
            raise StorageError("UPDATE_FAILED", f"conversation update failed: {exc}", "supabase") from exc
        return self.get_conversation(session_id)

    def upsert_audio_segment(self, record: AudioSegmentRecord) -> AudioSegmentRecord:
        row = {
            "session_id": record.session_id,
            "turn_number": record.turn_number,
            "speaker": record.speaker,
            "storage_path": record.storage_path,
            "audio_url": record.audio_url,
            "audio_duration": record.duration_ms,
            "byte_length": record.byte_length,
            "audio_format": "wav",
            "processing_status": record.processing_status,
            "error_reason": record.error_reason,
            "created_at": record.created_at.isoformat(),
        }
        try:
            self._client.table("conversation_audio").upsert(
                row, on_conflict="session_id,turn_number,speaker"
            ).execute()
        except Exception as exc:
            raise StorageError("UPSERT_FAILED", f"conversation_audio upsert failed: {exc}", "supabase") from exc
        return record

    def list_audio_segments(self, session_id: str) -> List[AudioSegmentRecord]:
        response = (
            self._client.table("conversation_audio")
            .select("*")
            .eq("session_id", session_id)
            .order("turn_number")
            .execute()
        )
        out: List[AudioSegmentRecord] = []
        for row in getattr(response, "data", None) or []:
            raw_status = row.get("processing_status")
            status = _read_processing_status(raw_status)
            error_reason = row.get("error_reason")
            if status == "failed" and not error_reason and raw_status != "failed":
                error_reason = f"unfinished row (processing_status={raw_status})"
            out.append(
                AudioSegmentRecord(
                    session_id=str(row["session_id"]),
                    turn_number=int(row["turn_number"]),
                    speaker=row["speaker"],
                    storage_path=str(row.get("storage_path") or ""),
                    audio_url=row.get("audio_url"),
                    duration_ms=int(row.get("audio_duration") or 0),
                    byte_length=int(row.get("byte_length") or 0),
                    processing_status=status,
                    error_reason=error_reason,
                    created_at=row["created_at"],
                )
            )
        return out

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit.setdefault(event.session_id, []).append(event)

    def list_audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit.get(session_id, []))
