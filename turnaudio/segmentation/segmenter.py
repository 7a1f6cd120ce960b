from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..internal_core.audio_utils import (
    DecodedAudio,
    compute_rms,
    decode_to_pcm16_mono,
    encode_wav_bytes,
    enforce_max_duration,
    slice_ms,
)
from ..internal_core.cancel import CancelToken
from ..internal_core.contracts import ExtractionResult, Turn, TurnSegment
from ..internal_core.errors import ProviderError
from ..provider.base import VoiceProvider
from .timing import compute_window, validate_turns

logger = logging.getLogger(__name__)


def _failed(turn: Turn, reason: str, *, clamped: bool = False) -> TurnSegment:
    return TurnSegment(
        turn_number=turn.turn_number,
        speaker=turn.speaker,
        begin_offset_ms=turn.begin_offset_ms,
        end_offset_ms=turn.end_offset_ms,
        duration_ms=turn.end_offset_ms - turn.begin_offset_ms,
        clamped=clamped,
        error_reason=reason,
    )


def _all_failed(turns: Sequence[Turn], reason: str) -> ExtractionResult:
    segments = [_failed(t, reason) for t in turns]
    return ExtractionResult(
        success=False, extracted=0, failed=len(segments), segments=segments, error=reason
    )


class TurnAudioSegmenter:
    def __init__(
        self,
        provider: VoiceProvider,
        tmp_dir: Path,
        *,
        sample_rate: int = 16000,
        max_workers: int = 4,
        max_audio_seconds: float = 4 * 3600,
    ):
        self._provider = provider
        self._tmp_dir = tmp_dir
        self._sample_rate = sample_rate
        self._max_workers = max(1, int(max_workers))
        self._max_audio_seconds = max_audio_seconds

    def _download_and_decode(self, session_id: str, url: str) -> DecodedAudio:
        data = self._provider.download(url)
        audio = decode_to_pcm16_mono(
            data, self._tmp_dir, session_id, sample_rate=self._sample_rate
        )
        enforce_max_duration(audio.duration_ms, self._max_audio_seconds)
        return audio

    def extract_one(self, audio: DecodedAudio, turn: Turn) -> TurnSegment:
        window = compute_window(turn, audio.duration_ms)
        if window.error:
            return _failed(turn, window.error, clamped=window.clamped)
        try:
            samples = slice_ms(audio, window.begin_ms, window.end_ms)
            if samples.size == 0:
                return _failed(turn, "window outside available audio", clamped=window.clamped)
            clip = encode_wav_bytes(samples, audio.sample_rate)
        except Exception as exc:
            return _failed(turn, f"extraction error: {exc}", clamped=window.clamped)
        if window.clamped:
            logger.info(
                "turn_window_clamped turn=%s requested_end_ms=%s available_ms=%s",
                turn.turn_number,
                turn.end_offset_ms,
                audio.duration_ms,
            )
        logger.debug("turn_extracted turn=%s bytes=%s rms=%.4f", turn.turn_number, len(clip), compute_rms(samples))
        return TurnSegment(
            turn_number=turn.turn_number,
            speaker=turn.speaker,
            begin_offset_ms=turn.begin_offset_ms,
            end_offset_ms=turn.end_offset_ms,
            duration_ms=window.requested_duration_ms,
            audio_bytes=clip,
            byte_length=len(clip),
            clamped=window.clamped,
        )

    def extract(
        self,
        session_id: str,
        merged_audio_url: str,
        turns: Sequence[Turn],
        conversation_started_at: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExtractionResult:
        cancel = cancel or CancelToken()
        ordered: List[Turn] = sorted(turns, key=lambda t: t.turn_number)
        logger.info(
            "turn_extraction_start session_id=%s turns=%s started_at=%s",
            session_id,
            len(ordered),
            conversation_started_at.isoformat() if conversation_started_at else "unknown",
        )
        if cancel.cancelled:
            return _all_failed(ordered, "cancelled before download")

        t0 = time.perf_counter()
        try:
            audio = self._download_and_decode(session_id, merged_audio_url)
        except ProviderError as exc:
            logger.error("merged_audio_download_failed session_id=%s error=%s", session_id, exc.message)
            return _all_failed(ordered, f"failed to download audio: {exc.message}")
        except ValueError as exc:
            logger.error("merged_audio_decode_failed session_id=%s error=%s", session_id, exc)
            return _all_failed(ordered, f"failed to decode audio: {exc}")

        warnings = validate_turns(ordered)
        for issue in warnings:
            logger.warning("turn_timeline_issue session_id=%s issue=%s", session_id, issue)

        # The decoded buffer is shared read-only across workers.
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            segments = list(pool.map(lambda t: self.extract_one(audio, t), ordered))
        segments.sort(key=lambda s: s.turn_number)

        extracted = sum(1 for s in segments if s.ok)
        failed = len(segments) - extracted
        logger.info(
            "turn_extraction_done session_id=%s extracted=%s failed=%s audio_ms=%s elapsed_ms=%s",
            session_id,
            extracted,
            failed,
            audio.duration_ms,
            int((time.perf_counter() - t0) * 1000),
        )
        return ExtractionResult(
            success=True,
            extracted=extracted,
            failed=failed,
            segments=segments,
            merged_duration_ms=audio.duration_ms,
            warnings=warnings,
        )
