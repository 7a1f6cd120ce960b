import json
import sys

import pytest

from turnaudio.internal_core.errors import StorageError
from turnaudio.persistence.service import segment_storage_path
from turnaudio.pipeline import SessionAudioPipeline
from turnaudio.provider.mock import MockVoiceProvider
from turnaudio.scripts import process_session

from conftest import MERGED_URL, chat_at, make_wav


@pytest.fixture
def provider():
    return MockVoiceProvider(
        chats=[chat_at("chat-1", 1)],
        status_script=["PROCESSING", "COMPLETE"],
        audio={MERGED_URL: make_wav(5000)},
        signed_url=MERGED_URL,
    )


@pytest.fixture
def run_cli(build_pipeline, provider, monkeypatch, capsys):
    pipeline = build_pipeline(provider)
    monkeypatch.setattr(SessionAudioPipeline, "from_config", staticmethod(lambda cfg: pipeline))

    def _run(*args):
        monkeypatch.setattr(sys, "argv", ["turnaudio-process", *args])
        process_session.main()
        return json.loads(capsys.readouterr().out)

    return _run


def test_cli_processes_session(run_cli, store) -> None:
    output = run_cli("--session-id", "sess-1")

    assert output["status"] == "complete"
    assert output["chat_id"] == "chat-1"
    assert output["uploaded"] == 4
    assert output["failed_turns"] == []
    assert store.get_conversation("sess-1").status == "COMPLETE"


def test_cli_retries_listed_turns(run_cli, store, blob_store, provider) -> None:
    store.update_conversation("sess-1", audio_url=MERGED_URL)

    output = run_cli("--session-id", "sess-1", "--retry-turns", "1, 3")

    assert output == {"session_id": "sess-1", "extracted": 2, "uploaded": 2, "failed": 0, "failed_turns": []}
    assert provider.start_calls == 0
    assert blob_store.paths() == [
        segment_storage_path("sess-1", 1, "agent"),
        segment_storage_path("sess-1", 3, "agent"),
    ]


def test_cli_retry_needs_reconstructed_audio(run_cli) -> None:
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--session-id", "sess-1", "--retry-turns", "2")
    assert "no reconstructed audio" in str(exc_info.value)


def test_cli_unknown_session_exits(run_cli) -> None:
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--session-id", "nope")
    assert str(exc_info.value) == "conversation not found: nope"


def test_cli_storage_failure_exits(run_cli, store, monkeypatch) -> None:
    def refuse(session_id, **fields):
        raise StorageError("UPDATE_FAILED", "conversations update refused", "memory")

    monkeypatch.setattr(store, "update_conversation", refuse)

    with pytest.raises(SystemExit) as exc_info:
        run_cli("--session-id", "sess-1")
    assert str(exc_info.value) == "storage error (UPDATE_FAILED): conversations update refused"
