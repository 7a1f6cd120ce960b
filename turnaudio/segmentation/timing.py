from __future__ import annotations

"""
Turn window helpers.

Design intent:
- Turn offsets are integer milliseconds since `Conversation.started_at`.
- Build `Turn` rows from raw transcript entries when the live stream did not
  record explicit begin/end offsets.
- Report timeline problems as warnings; never block extraction on them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..internal_core.contracts import Turn

logger = logging.getLogger(__name__)

# Last turn without explicit bounds or a successor gets this much audio.
FALLBACK_LAST_TURN_MS = 2000


@dataclass(frozen=True)
class TurnWindow:
    begin_ms: int
    end_ms: int
    requested_duration_ms: int
    clamped: bool
    error: Optional[str] = None


def compute_window(turn: Turn, available_ms: int) -> TurnWindow:
    begin = int(turn.begin_offset_ms)
    end = int(turn.end_offset_ms)
    requested = end - begin
    if requested <= 0:
        return TurnWindow(begin, end, requested, False, "zero-length window")
    clamped_end = min(end, int(available_ms))
    if clamped_end <= begin:
        return TurnWindow(begin, clamped_end, requested, True, "window outside available audio")
    return TurnWindow(begin, clamped_end, requested, clamped_end != end)


def validate_turns(turns: Sequence[Turn]) -> List[str]:
    issues: List[str] = []
    seen_numbers = set()
    last_end_by_speaker: Dict[str, Turn] = {}
    ordered = sorted(turns, key=lambda t: t.turn_number)
    for turn in ordered:
        if turn.turn_number in seen_numbers:
            issues.append(f"turn {turn.turn_number} appears more than once")
        seen_numbers.add(turn.turn_number)
        if turn.end_offset_ms <= turn.begin_offset_ms:
            issues.append(
                f"turn {turn.turn_number} has empty window {turn.begin_offset_ms}-{turn.end_offset_ms}ms"
            )
            continue
        prev = last_end_by_speaker.get(turn.speaker)
        if prev is not None and turn.begin_offset_ms < prev.end_offset_ms:
            issues.append(
                f"turn {turn.turn_number} ({turn.speaker}) overlaps turn {prev.turn_number} "
                f"by {prev.end_offset_ms - turn.begin_offset_ms}ms"
            )
        last_end_by_speaker[turn.speaker] = turn
    return issues


def _parse_ts_ms(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    try:
        text = str(raw).strip().replace("Z", "+00:00")
        return int(round(datetime.fromisoformat(text).timestamp() * 1000))
    except ValueError:
        return None


def turns_from_transcript(entries: Sequence[Dict[str, Any]], started_at: datetime) -> List[Turn]:
    """
    Convert raw transcript entries into `Turn` rows.

    Priority per entry: explicit `metadata.time_begin/time_end`, then
    `prosody.duration` from the entry timestamp, then the gap to the next
    entry's timestamp (or `FALLBACK_LAST_TURN_MS` for the final entry).
    Entries without a usable timestamp or speaker are skipped.
    """
    start_ms = int(round(started_at.timestamp() * 1000))
    ordered = sorted(
        (e for e in entries if isinstance(e, dict)),
        key=lambda e: int(e.get("turn_number") or 0),
    )
    out: List[Turn] = []
    for idx, entry in enumerate(ordered):
        speaker = str(entry.get("speaker") or "").strip().lower()
        if speaker not in {"user", "agent"}:
            logger.warning("transcript_entry_skipped reason=speaker value=%r", entry.get("speaker"))
            continue
        metadata = entry.get("metadata")
        metadata = metadata if isinstance(metadata, dict) else {}
        prosody = entry.get("prosody")
        prosody = prosody if isinstance(prosody, dict) else {}
        begin: Optional[int]
        end: Optional[int]
        if metadata.get("time_begin") is not None and metadata.get("time_end") is not None:
            begin, end = int(metadata["time_begin"]), int(metadata["time_end"])
        else:
            ts = _parse_ts_ms(entry.get("timestamp"))
            if ts is None:
                logger.warning(
                    "transcript_entry_skipped reason=timestamp turn_number=%s", entry.get("turn_number")
                )
                continue
            begin = ts - start_ms
            if prosody.get("duration"):
                end = begin + int(round(float(prosody["duration"]) * 1000))
            else:
                next_ts = None
                if idx + 1 < len(ordered):
                    next_ts = _parse_ts_ms(ordered[idx + 1].get("timestamp"))
                end = (next_ts - start_ms) if next_ts is not None else begin + FALLBACK_LAST_TURN_MS
        begin = max(0, begin)
        end = max(begin, end)
        out.append(
            Turn(
                turn_number=int(entry.get("turn_number") or idx + 1),
                speaker=speaker,
                text=str(entry.get("message") or entry.get("text") or ""),
                begin_offset_ms=begin,
                end_offset_ms=end,
            )
        )
    return out
