from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidTransition

Speaker = Literal["user", "agent"]

JobStatus = Literal["PENDING", "IN_PROGRESS", "COMPLETE", "FAILED", "TIMEOUT"]

TERMINAL_JOB_STATUSES = frozenset({"COMPLETE", "FAILED", "TIMEOUT"})

_JOB_STATUS_RANK: Dict[str, int] = {
    "PENDING": 0,
    "IN_PROGRESS": 1,
    "COMPLETE": 2,
    "FAILED": 2,
    "TIMEOUT": 2,
}


class Conversation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    started_at: datetime
    external_chat_id: Optional[str] = None
    status: Optional[str] = None
    audio_url: Optional[str] = None
    # Set alongside `external_chat_id` when it came from time matching.
    chat_match_distance_ms: Optional[int] = None
    chat_match_low_confidence: bool = False

    @property
    def started_at_ms(self) -> int:
        return int(round(self.started_at.timestamp() * 1000))


class Turn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    turn_number: int = Field(ge=1)
    speaker: Speaker
    text: str = ""
    begin_offset_ms: int = Field(ge=0)
    end_offset_ms: int = Field(ge=0)

    @model_validator(mode="after")
    def _validate_window(self) -> "Turn":
        # begin == end is allowed through; the segmenter reports it as a failed turn.
        if self.end_offset_ms < self.begin_offset_ms:
            raise ValueError("Turn.end_offset_ms must be >= Turn.begin_offset_ms")
        return self


class ChatSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    start_timestamp_ms: int
    status: Optional[str] = None


class ChatMatch(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    chat_id: str
    distance_ms: int
    low_confidence: bool = False
    source: Literal["stored", "time_match"] = "time_match"


class ReconstructionJob(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    external_chat_id: str
    status: JobStatus = "PENDING"
    signed_audio_url: Optional[str] = None
    expires_at_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def advance(
        self,
        status: JobStatus,
        signed_audio_url: Optional[str] = None,
        expires_at_ms: Optional[int] = None,
    ) -> "ReconstructionJob":
        if self.is_terminal:
            if status == self.status:
                return self
            raise InvalidTransition(
                f"chat_id={self.external_chat_id} is terminal ({self.status}); refusing {status}"
            )
        if _JOB_STATUS_RANK[status] < _JOB_STATUS_RANK[self.status]:
            # Providers occasionally report QUEUED again after PROCESSING.
            return self
        return self.model_copy(
            update={
                "status": status,
                "signed_audio_url": signed_audio_url if status == "COMPLETE" else None,
                "expires_at_ms": expires_at_ms if status == "COMPLETE" else None,
            }
        )


class ReconstructStartResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    chat_id: Optional[str] = None
    status: str
    audio_url: Optional[str] = None
    low_confidence: bool = False
    error: Optional[str] = None


class PollOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    status: JobStatus
    audio_url: Optional[str] = None
    stored_audio_url: Optional[str] = None
    attempts: int = 0
    cancelled: bool = False


class TurnSegment(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    turn_number: int
    speaker: Speaker
    begin_offset_ms: int
    end_offset_ms: int
    duration_ms: int
    audio_bytes: Optional[bytes] = None
    byte_length: int = 0
    clamped: bool = False
    error_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.audio_bytes is not None and self.error_reason is None


class ExtractionResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    extracted: int
    failed: int
    segments: List[TurnSegment] = Field(default_factory=list)
    merged_duration_ms: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed_turns(self) -> List[int]:
        return [seg.turn_number for seg in self.segments if not seg.ok]


ProcessingStatus = Literal["uploaded", "failed"]


class AudioSegmentRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    turn_number: int
    speaker: Speaker
    storage_path: str
    audio_url: Optional[str] = None
    duration_ms: int
    byte_length: int = 0
    processing_status: ProcessingStatus
    error_reason: Optional[str] = None
    created_at: datetime

    @property
    def key(self) -> tuple:
        return (self.session_id, self.turn_number, self.speaker)


class TurnPersistOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    turn_number: int
    speaker: Speaker
    uploaded: bool = False
    db_recorded: bool = False
    storage_path: Optional[str] = None
    audio_url: Optional[str] = None
    error: Optional[str] = None


class PersistenceResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    success: bool
    uploaded: int = 0
    failed: int = 0
    db_records: int = 0
    outcomes: List[TurnPersistOutcome] = Field(default_factory=list)

    @property
    def failed_turns(self) -> List[int]:
        return [item.turn_number for item in self.outcomes if item.error is not None]


AuditEventType = Literal[
    "CHAT_RESOLVED",
    "CHAT_RESOLUTION_EMPTY",
    "RECONSTRUCTION_STARTED",
    "RECONSTRUCTION_STATUS",
    "RECONSTRUCTION_COMPLETE",
    "RECONSTRUCTION_FAILED",
    "RECONSTRUCTION_TIMEOUT",
    "AUDIO_ARCHIVED",
    "EXTRACTION_DONE",
    "PERSISTENCE_DONE",
    "PIPELINE_CANCELLED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


PipelineStatus = Literal[
    "complete", "partial", "failed", "timeout", "resolution_empty", "cancelled"
]


class PipelineReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    status: PipelineStatus
    chat_id: Optional[str] = None
    low_confidence_match: bool = False
    job_status: Optional[JobStatus] = None
    audio_url: Optional[str] = None
    stored_audio_url: Optional[str] = None
    extracted: int = 0
    uploaded: int = 0
    failed: int = 0
    db_records: int = 0
    failed_turns: List[int] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
