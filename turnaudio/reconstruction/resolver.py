from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..internal_core.contracts import ChatMatch
from ..provider.base import VoiceProvider

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MS = 30 * 60 * 1000


def _to_ms(started_at: datetime) -> int:
    return int(round(started_at.timestamp() * 1000))


class ChatIdentityResolver:
    """
    Match an internal conversation to the provider chat that started closest to it.

    Always returns the best candidate when one exists. A gap above
    `tolerance_ms` only marks the match `low_confidence`; callers decide
    whether to trust it.
    """

    def __init__(self, provider: VoiceProvider, tolerance_ms: int = DEFAULT_TOLERANCE_MS):
        self._provider = provider
        self._tolerance_ms = int(tolerance_ms)

    def resolve(self, started_at: datetime) -> Optional[ChatMatch]:
        internal_ms = _to_ms(started_at)
        candidates = self._provider.list_recent_chats()
        best_id: Optional[str] = None
        best_distance = 0
        for chat in candidates:
            distance = abs(internal_ms - int(chat.start_timestamp_ms))
            logger.debug("chat_candidate chat_id=%s distance_ms=%s", chat.id, distance)
            # strict `<` keeps the first-seen candidate on ties
            if best_id is None or distance < best_distance:
                best_id = chat.id
                best_distance = distance
        if best_id is None:
            logger.info("chat_resolution_empty started_at=%s", started_at.isoformat())
            return None

        low_confidence = best_distance > self._tolerance_ms
        if low_confidence:
            logger.warning(
                "chat_match_low_confidence chat_id=%s distance_min=%.1f tolerance_min=%.1f",
                best_id,
                best_distance / 60000.0,
                self._tolerance_ms / 60000.0,
            )
        else:
            logger.info("chat_matched chat_id=%s distance_ms=%s", best_id, best_distance)
        return ChatMatch(chat_id=best_id, distance_ms=best_distance, low_confidence=low_confidence)
