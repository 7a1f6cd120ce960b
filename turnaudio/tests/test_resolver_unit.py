import random

from turnaudio.internal_core.contracts import ChatSummary
from turnaudio.provider.mock import MockVoiceProvider
from turnaudio.reconstruction.resolver import ChatIdentityResolver

from conftest import STARTED_AT, chat_at


def test_resolve_picks_closest_start_time() -> None:
    provider = MockVoiceProvider(
        chats=[chat_at("chat-2", 2), chat_at("chat-31", 31), chat_at("chat-5", 5)]
    )
    match = ChatIdentityResolver(provider).resolve(STARTED_AT)

    assert match is not None
    assert match.chat_id == "chat-2"
    assert match.distance_ms == 2 * 60 * 1000
    assert match.low_confidence is False


def test_resolve_returns_none_for_empty_candidate_list() -> None:
    assert ChatIdentityResolver(MockVoiceProvider(chats=[])).resolve(STARTED_AT) is None


def test_resolve_keeps_first_seen_candidate_on_tie() -> None:
    provider = MockVoiceProvider(chats=[chat_at("before", -3), chat_at("after", 3)])
    match = ChatIdentityResolver(provider).resolve(STARTED_AT)
    assert match is not None
    assert match.chat_id == "before"


def test_resolve_flags_distant_match_without_rejecting_it() -> None:
    provider = MockVoiceProvider(chats=[chat_at("far", 31), chat_at("farther", 90)])
    match = ChatIdentityResolver(provider, tolerance_ms=30 * 60 * 1000).resolve(STARTED_AT)

    assert match is not None
    assert match.chat_id == "far"
    assert match.low_confidence is True


def test_resolve_matches_brute_force_minimum() -> None:
    rng = random.Random(7)
    base_ms = int(STARTED_AT.timestamp() * 1000)
    for _ in range(50):
        chats = [
            ChatSummary(id=f"c{i}", start_timestamp_ms=base_ms + rng.randint(-7_200_000, 7_200_000))
            for i in range(rng.randint(1, 12))
        ]
        expected = min(chats, key=lambda c: abs(base_ms - c.start_timestamp_ms))
        match = ChatIdentityResolver(MockVoiceProvider(chats=chats)).resolve(STARTED_AT)
        assert match is not None
        assert match.distance_ms == abs(base_ms - expected.start_timestamp_ms)
        assert match.chat_id == expected.id
