import dataclasses
import io
import wave
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from turnaudio.internal_core.config import load_config
from turnaudio.internal_core.contracts import ChatSummary, Conversation, Turn
from turnaudio.internal_core.conversation_store import InMemoryConversationStore
from turnaudio.pipeline import SessionAudioPipeline
from turnaudio.provider.mock import MockVoiceProvider
from turnaudio.storage.memory import InMemoryBlobStore

SAMPLE_RATE = 8000
MERGED_URL = "https://mock.invalid/merged.wav"
STARTED_AT = datetime(2025, 3, 4, 15, 0, 0, tzinfo=timezone.utc)


def make_wav(duration_ms: int, sample_rate: int = SAMPLE_RATE, channels: int = 1) -> bytes:
    frames = duration_ms * sample_rate // 1000
    t = np.arange(frames, dtype=np.float32) / sample_rate
    tone = (0.2 * np.sin(2.0 * np.pi * 440.0 * t) * 32767).astype("<i2")
    if channels > 1:
        tone = np.repeat(tone, channels)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(tone.tobytes())
    return buf.getvalue()


def wav_frames(data: bytes) -> int:
    with wave.open(io.BytesIO(data), "rb") as wf:
        return wf.getnframes()


def make_turns(windows):
    speakers = ["agent", "user"]
    return [
        Turn(
            turn_number=i + 1,
            speaker=speakers[i % 2],
            text=f"turn {i + 1}",
            begin_offset_ms=begin,
            end_offset_ms=end,
        )
        for i, (begin, end) in enumerate(windows)
    ]


def chat_at(chat_id: str, minutes_after_start: float) -> ChatSummary:
    ts = STARTED_AT + timedelta(minutes=minutes_after_start)
    return ChatSummary(id=chat_id, start_timestamp_ms=int(ts.timestamp() * 1000), status="COMPLETE")


@pytest.fixture
def cfg():
    return dataclasses.replace(
        load_config(),
        TURNAUDIO_PROVIDER="mock",
        TURNAUDIO_STORE="memory",
        TURNAUDIO_POLL_MAX_ATTEMPTS=5,
        TURNAUDIO_POLL_INTERVAL_MS=0,
        TURNAUDIO_MAX_WORKERS=3,
        TURNAUDIO_PIPELINE_DEADLINE_SEC=None,
    )


@pytest.fixture
def store():
    store = InMemoryConversationStore()
    store.add_conversation(
        Conversation(id="conv-1", session_id="sess-1", started_at=STARTED_AT),
        make_turns([(0, 1000), (1000, 2500), (2600, 3900), (4000, 5000)]),
    )
    return store


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def build_pipeline(cfg, store, blob_store):
    def _build(provider: MockVoiceProvider) -> SessionAudioPipeline:
        return SessionAudioPipeline(cfg, store, provider, blob_store)

    return _build
