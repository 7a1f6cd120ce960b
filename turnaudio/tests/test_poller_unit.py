import time

import pytest

from turnaudio.internal_core.cancel import CancelToken
from turnaudio.internal_core.contracts import Conversation, ReconstructionJob
from turnaudio.internal_core.conversation_store import InMemoryConversationStore
from turnaudio.internal_core.errors import InvalidTransition, MalformedProviderResponse, ProviderError, StorageError
from turnaudio.provider.mock import MockVoiceProvider
from turnaudio.reconstruction.archive import MergedAudioArchiver, merged_audio_path, merged_audio_suffix
from turnaudio.reconstruction.poller import ReconstructionPoller
from turnaudio.storage.memory import InMemoryBlobStore

from conftest import MERGED_URL, STARTED_AT


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_poll_returns_url_after_third_attempt(store) -> None:
    provider = MockVoiceProvider(status_script=["PROCESSING", "PROCESSING", "COMPLETE"], signed_url=MERGED_URL)
    sleeps = _SleepRecorder()
    poller = ReconstructionPoller(provider, store, sleep=sleeps)

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=5, interval_ms=250)

    assert outcome.success is True
    assert outcome.status == "COMPLETE"
    assert outcome.audio_url == MERGED_URL
    assert outcome.attempts == 3
    assert provider.status_calls == 3
    assert sleeps.calls == [0.25, 0.25]

    conversation = store.get_conversation("sess-1")
    assert conversation.external_chat_id == "chat-1"
    assert conversation.status == "COMPLETE"
    assert conversation.audio_url == MERGED_URL


@pytest.mark.parametrize("max_attempts", [1, 3, 6])
def test_poll_times_out_after_exactly_max_attempts(store, max_attempts: int) -> None:
    provider = MockVoiceProvider(status_script=["QUEUED", "PROCESSING"])
    sleeps = _SleepRecorder()
    poller = ReconstructionPoller(provider, store, sleep=sleeps)

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=max_attempts, interval_ms=10)

    assert outcome.success is False
    assert outcome.status == "TIMEOUT"
    assert outcome.attempts == max_attempts
    assert provider.status_calls == max_attempts
    assert len(sleeps.calls) == max_attempts - 1
    assert store.get_conversation("sess-1").status == "TIMEOUT"
    assert poller.job("chat-1").status == "TIMEOUT"


def test_poll_stops_on_failed_status(store) -> None:
    provider = MockVoiceProvider(status_script=["PROCESSING", "FAILED", "COMPLETE"])
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=5, interval_ms=0)

    assert outcome.status == "FAILED"
    assert outcome.success is False
    assert provider.status_calls == 2
    assert store.get_conversation("sess-1").audio_url is None


def test_poll_counts_network_errors_as_attempts(store) -> None:
    boom = ProviderError("NETWORK_ERROR", "connection reset", "mock")
    provider = MockVoiceProvider(status_script=[boom, boom, "COMPLETE"])
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)

    assert poller.poll_until_done("chat-1", "sess-1", max_attempts=2, interval_ms=0).status == "TIMEOUT"

    provider = MockVoiceProvider(status_script=[boom, boom, "COMPLETE"])
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)
    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)
    assert outcome.success is True
    assert outcome.attempts == 3


def test_poll_propagates_malformed_provider_response(store) -> None:
    provider = MockVoiceProvider(status_script=["SOMETHING_NEW"])
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)
    with pytest.raises(MalformedProviderResponse):
        poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)


def test_poll_stops_when_cancelled(store) -> None:
    provider = MockVoiceProvider(status_script=["PROCESSING"])
    token = CancelToken()
    token.cancel()
    poller = ReconstructionPoller(provider, store)

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=5, interval_ms=1000, cancel=token)

    assert outcome.status == "TIMEOUT"
    assert outcome.cancelled is True
    assert provider.status_calls == 0
    assert store.get_conversation("sess-1").status == "CANCELLED"
    assert store.list_audit_events("sess-1")[-1].code == "CANCELLED"


def test_cancellation_wakes_interval_wait(store) -> None:
    provider = MockVoiceProvider(status_script=["PROCESSING"])
    poller = ReconstructionPoller(provider, store)
    started = time.monotonic()

    outcome = poller.poll_until_done(
        "chat-1", "sess-1", max_attempts=50, interval_ms=5000, cancel=CancelToken(deadline_sec=0.05)
    )

    assert outcome.cancelled is True
    assert provider.status_calls == 1
    assert time.monotonic() - started < 2.0


def test_completed_url_is_served_from_cache(store) -> None:
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL)
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)
    poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    again = poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    assert again.success is True
    assert again.attempts == 0
    assert provider.status_calls == 1
    assert poller.cached_url("chat-1") == MERGED_URL


def test_expired_signed_url_is_not_reused(store) -> None:
    expired_at = int(time.time() * 1000) - 1
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL, expires_at_ms=expired_at)
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)
    poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    assert poller.cached_url("chat-1") is None


def test_check_status_returns_none_on_provider_error(store) -> None:
    provider = MockVoiceProvider(status_script=[ProviderError("HTTP_503", "unavailable", "mock")])
    assert ReconstructionPoller(provider, store).check_status("chat-1") is None


def test_start_returns_without_polling(store) -> None:
    provider = MockVoiceProvider(status_script=["COMPLETE"])
    job = ReconstructionPoller(provider, store).start("chat-1")
    assert job.status == "PENDING"
    assert provider.start_calls == 1
    assert provider.status_calls == 0


def test_terminal_job_refuses_further_transitions() -> None:
    job = ReconstructionJob(external_chat_id="chat-1").advance("IN_PROGRESS").advance("COMPLETE", MERGED_URL)
    assert job.is_terminal
    assert job.advance("COMPLETE") is job
    with pytest.raises(InvalidTransition):
        job.advance("IN_PROGRESS")
    with pytest.raises(InvalidTransition):
        job.advance("TIMEOUT")


def test_job_ignores_backwards_progress() -> None:
    job = ReconstructionJob(external_chat_id="chat-1").advance("IN_PROGRESS")
    assert job.advance("PENDING").status == "IN_PROGRESS"


class _FailingUpdateStore(InMemoryConversationStore):
    """Refuses to record the merged audio URL until `broken` is cleared."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = True

    def update_conversation(self, session_id, **fields):
        if self.broken and "audio_url" in fields:
            raise StorageError("UPDATE_FAILED", "conversations update refused", "memory")
        return super().update_conversation(session_id, **fields)


def _failing_store() -> _FailingUpdateStore:
    store = _FailingUpdateStore()
    store.add_conversation(Conversation(id="conv-1", session_id="sess-1", started_at=STARTED_AT))
    return store


def test_complete_not_reported_when_url_cannot_be_stored() -> None:
    store = _failing_store()
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL)
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)

    with pytest.raises(StorageError):
        poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    assert store.get_conversation("sess-1").audio_url is None
    events = store.list_audit_events("sess-1")
    assert events[-1].code == "PERSIST_COMPLETE_FAILED"
    assert "RECONSTRUCTION_COMPLETE" not in [e.type for e in events]


def test_repoll_persists_once_store_recovers() -> None:
    store = _failing_store()
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL)
    poller = ReconstructionPoller(provider, store, sleep=lambda s: None)
    with pytest.raises(StorageError):
        poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    store.broken = False
    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    assert outcome.success is True
    assert outcome.attempts == 0
    assert provider.status_calls == 1
    assert store.get_conversation("sess-1").audio_url == MERGED_URL
    assert store.list_audit_events("sess-1")[-1].type == "RECONSTRUCTION_COMPLETE"


def test_completed_audio_is_archived_to_blob_store(store) -> None:
    blobs = InMemoryBlobStore()
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL, audio={MERGED_URL: b"RIFFdata"})
    poller = ReconstructionPoller(
        provider, store, sleep=lambda s: None, archiver=MergedAudioArchiver(provider, blobs)
    )

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    path = merged_audio_path("sess-1", "chat-1", ".wav")
    assert blobs.get(path) == b"RIFFdata"
    assert outcome.audio_url == MERGED_URL
    assert outcome.stored_audio_url == blobs.get_public_url(path)
    assert store.get_conversation("sess-1").audio_url == blobs.get_public_url(path)
    assert poller.stored_url("chat-1") == outcome.stored_audio_url
    assert "AUDIO_ARCHIVED" in [e.type for e in store.list_audit_events("sess-1")]


def test_archive_failure_falls_back_to_signed_url(store) -> None:
    blobs = InMemoryBlobStore(fail_paths=[merged_audio_path("sess-1", "chat-1", ".wav")])
    provider = MockVoiceProvider(status_script=["COMPLETE"], signed_url=MERGED_URL, audio={MERGED_URL: b"RIFFdata"})
    poller = ReconstructionPoller(
        provider, store, sleep=lambda s: None, archiver=MergedAudioArchiver(provider, blobs)
    )

    outcome = poller.poll_until_done("chat-1", "sess-1", max_attempts=3, interval_ms=0)

    assert outcome.success is True
    assert outcome.stored_audio_url is None
    assert store.get_conversation("sess-1").audio_url == MERGED_URL
    codes = [e.code for e in store.list_audit_events("sess-1")]
    assert "ARCHIVE_FAILED" in codes
    assert codes[-1] == "COMPLETE"


@pytest.mark.parametrize(
    "url, suffix",
    [
        ("https://cdn.invalid/a/merged.MP3?X-Amz-Signature=abc", ".mp3"),
        ("https://cdn.invalid/a/merged.wav", ".wav"),
        ("https://cdn.invalid/a/merged", ".mp4"),
        ("https://cdn.invalid/a/merged.bin?sig=1", ".mp4"),
    ],
)
def test_merged_audio_suffix_follows_url_path(url: str, suffix: str) -> None:
    assert merged_audio_suffix(url) == suffix
