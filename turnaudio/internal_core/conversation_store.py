from __future__ import annotations

from abc import ABC, abstractmethod
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from .contracts import AudioSegmentRecord, AuditEvent, Conversation, Turn
from .errors import ConversationNotFound

_UPDATABLE_FIELDS = {
    "external_chat_id",
    "status",
    "audio_url",
    "chat_match_distance_ms",
    "chat_match_low_confidence",
}


class ConversationStore(ABC):
    @abstractmethod
    def get_conversation(self, session_id: str) -> Conversation: ...

    @abstractmethod
    def list_turns(self, session_id: str) -> List[Turn]: ...

    @abstractmethod
    def update_conversation(self, session_id: str, **fields: Any) -> Conversation: ...

    @abstractmethod
    def upsert_audio_segment(self, record: AudioSegmentRecord) -> AudioSegmentRecord: ...

    @abstractmethod
    def list_audio_segments(self, session_id: str) -> List[AudioSegmentRecord]: ...

    @abstractmethod
    def append_audit_event(self, event: AuditEvent) -> None: ...

    @abstractmethod
    def list_audit_events(self, session_id: str) -> List[AuditEvent]: ...


def check_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Conversation fields are immutable: {sorted(unknown)}")
    return fields


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._lock = RLock()
        self._conversations: Dict[str, Conversation] = {}
        self._turns: Dict[str, List[Turn]] = {}
        self._segments: Dict[Tuple[str, int, str], AudioSegmentRecord] = {}
        self._audit: Dict[str, List[AuditEvent]] = {}

    def add_conversation(self, conversation: Conversation, turns: Optional[List[Turn]] = None) -> None:
        with self._lock:
            self._conversations[conversation.session_id] = conversation
            self._turns[conversation.session_id] = list(turns or [])

    def get_conversation(self, session_id: str) -> Conversation:
        with self._lock:
            conversation = self._conversations.get(session_id)
            if conversation is None:
                raise ConversationNotFound(session_id)
            return conversation

    def list_turns(self, session_id: str) -> List[Turn]:
        with self._lock:
            if session_id not in self._conversations:
                raise ConversationNotFound(session_id)
            return sorted(self._turns.get(session_id, []), key=lambda t: t.turn_number)

    def update_conversation(self, session_id: str, **fields: Any) -> Conversation:
        check_update_fields(fields)
        with self._lock:
            current = self.get_conversation(session_id)
            updated = current.model_copy(update=fields)
            self._conversations[session_id] = updated
            return updated

    def upsert_audio_segment(self, record: AudioSegmentRecord) -> AudioSegmentRecord:
        with self._lock:
            self._segments[record.key] = record
            return record

    def list_audio_segments(self, session_id: str) -> List[AudioSegmentRecord]:
        with self._lock:
            rows = [rec for key, rec in self._segments.items() if key[0] == session_id]
        return sorted(rows, key=lambda r: (r.turn_number, r.speaker))

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit.setdefault(event.session_id, []).append(event)

    def list_audit_events(self, session_id: str) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit.get(session_id, []))
