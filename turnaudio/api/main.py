from __future__ import annotations

"""
HTTP surface for the turn audio pipeline.

Design intent:
- Keep routes thin; all reconstruction/segmentation logic lives in the pipeline.
- Handlers are sync because polling blocks; FastAPI runs them in its threadpool.
- Never return clip bytes or signed URL query strings in diagnostics.
"""

import logging
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from turnaudio.internal_core.config import load_config
from turnaudio.internal_core.contracts import AudioSegmentRecord, PipelineReport
from turnaudio.internal_core.errors import ConversationNotFound, ProviderError, StorageError
from turnaudio.pipeline import SessionAudioPipeline


class ConversationAudioRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    action: Literal["start", "poll", "status"]
    chat_id: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=120)
    interval_ms: Optional[int] = Field(default=None, ge=0, le=60_000)


class ConversationAudioResponse(BaseModel):
    success: bool
    status: Optional[str] = None
    chat_id: Optional[str] = None
    audio_url: Optional[str] = None
    attempts: Optional[int] = None
    low_confidence: bool = False
    error: Optional[str] = None


class TurnAudioRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    audio_url: Optional[str] = None
    only_turns: Optional[list[int]] = None


class TurnSegmentSummary(BaseModel):
    turn_number: int
    speaker: str
    duration_ms: int
    byte_length: int
    clamped: bool
    error_reason: Optional[str] = None


class TurnAudioResponse(BaseModel):
    session_id: str
    extraction_success: bool
    extracted: int
    extraction_failed: int
    segments: list[TurnSegmentSummary] = Field(default_factory=list)
    persistence_success: bool = False
    uploaded: int = 0
    failed: int = 0
    db_records: int = 0
    failed_turns: list[int] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class ProcessSessionRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)


class SegmentListResponse(BaseModel):
    session_id: str
    segments: list[AudioSegmentRecord] = Field(default_factory=list)


app = FastAPI(title="turnaudio pipeline service")
logger = logging.getLogger(__name__)


def _get_pipeline() -> SessionAudioPipeline:
    existing = getattr(app.state, "pipeline", None)
    if isinstance(existing, SessionAudioPipeline):
        return existing
    created = SessionAudioPipeline.from_config(load_config())
    setattr(app.state, "pipeline", created)
    return created


def _not_found(exc: ConversationNotFound) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Conversation not found: {exc.session_id}")


def _storage_unavailable(exc: StorageError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Storage error ({exc.code}): {exc.message}")


def _bad_gateway(exc: ProviderError) -> HTTPException:
    return HTTPException(status_code=502, detail=f"Provider error ({exc.code}): {exc.message}")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/conversation/audio", response_model=ConversationAudioResponse)
def conversation_audio(payload: ConversationAudioRequest) -> ConversationAudioResponse:
    pipeline = _get_pipeline()
    try:
        if payload.action == "start":
            started = pipeline.reconstruct_audio(payload.session_id)
            return ConversationAudioResponse(**started.model_dump())

        if not payload.chat_id:
            raise HTTPException(status_code=400, detail=f"chat_id is required for action '{payload.action}'.")

        if payload.action == "poll":
            outcome = pipeline.poll_reconstruction(
                payload.chat_id,
                payload.session_id,
                max_attempts=payload.max_attempts,
                interval_ms=payload.interval_ms,
            )
            return ConversationAudioResponse(
                success=outcome.success,
                status=outcome.status,
                chat_id=payload.chat_id,
                audio_url=outcome.audio_url,
                attempts=outcome.attempts,
            )

        job = pipeline.check_status(payload.chat_id)
        return ConversationAudioResponse(
            success=job is not None,
            status=job.status if job else None,
            chat_id=payload.chat_id,
            audio_url=job.signed_audio_url if job else None,
        )
    except ConversationNotFound as exc:
        raise _not_found(exc) from exc
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    except StorageError as exc:
        raise _storage_unavailable(exc) from exc


@app.post("/conversation/audio/turns", response_model=TurnAudioResponse)
def conversation_audio_turns(payload: TurnAudioRequest) -> TurnAudioResponse:
    pipeline = _get_pipeline()
    try:
        conversation = pipeline.store.get_conversation(payload.session_id)
        turns = pipeline.store.list_turns(payload.session_id)
    except ConversationNotFound as exc:
        raise _not_found(exc) from exc

    audio_url = payload.audio_url or conversation.audio_url
    if not audio_url:
        raise HTTPException(
            status_code=400,
            detail="audio_url is required until reconstruction has completed for this session.",
        )
    if payload.only_turns is not None:
        wanted = set(payload.only_turns)
        turns = [t for t in turns if t.turn_number in wanted]

    cancel = pipeline.new_cancel_token()
    extraction = pipeline.extract_turns(
        payload.session_id, audio_url, turns, conversation.started_at, cancel=cancel
    )
    response = TurnAudioResponse(
        session_id=payload.session_id,
        extraction_success=extraction.success,
        extracted=extraction.extracted,
        extraction_failed=extraction.failed,
        segments=[
            TurnSegmentSummary(**seg.model_dump(exclude={"audio_bytes", "begin_offset_ms", "end_offset_ms"}))
            for seg in extraction.segments
        ],
        warnings=list(extraction.warnings),
        error=extraction.error,
    )
    if not extraction.success:
        response.failed_turns = extraction.failed_turns
        return response

    persisted = pipeline.persist_segments(payload.session_id, extraction.segments, cancel=cancel)
    response.persistence_success = persisted.success
    response.uploaded = persisted.uploaded
    response.failed = persisted.failed
    response.db_records = persisted.db_records
    response.failed_turns = sorted(set(extraction.failed_turns) | set(persisted.failed_turns))
    return response


@app.post("/conversation/audio/process", response_model=PipelineReport)
def conversation_audio_process(payload: ProcessSessionRequest) -> PipelineReport:
    pipeline = _get_pipeline()
    try:
        report = pipeline.process_session(payload.session_id)
    except ConversationNotFound as exc:
        raise _not_found(exc) from exc
    except ProviderError as exc:
        raise _bad_gateway(exc) from exc
    except StorageError as exc:
        raise _storage_unavailable(exc) from exc
    if report.status not in {"complete", "partial"}:
        logger.warning(
            "session_not_processed session_id=%s status=%s error=%s",
            payload.session_id,
            report.status,
            report.error,
        )
    return report


@app.get("/conversation/{session_id}/segments", response_model=SegmentListResponse)
def conversation_segments(session_id: str) -> SegmentListResponse:
    normalized = str(session_id or "").strip()
    if not normalized:
        raise HTTPException(status_code=400, detail="session_id is required.")
    pipeline = _get_pipeline()
    rows: list[Any] = pipeline.store.list_audio_segments(normalized)
    return SegmentListResponse(session_id=normalized, segments=rows)
