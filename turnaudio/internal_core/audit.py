from __future__ import annotations

import datetime as _dt
import logging
from typing import Optional

from .contracts import AuditEvent, AuditEventType
from .conversation_store import ConversationStore

logger = logging.getLogger(__name__)


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # Never include audio bytes or signed URL query strings in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "…"
    return detail


def redact_url(url: Optional[str]) -> str:
    if not url:
        return ""
    return url.split("?", 1)[0]


def log_event(
    store: ConversationStore,
    session_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> None:
    event = AuditEvent(
        ts_iso=_ts_iso(),
        session_id=session_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    try:
        store.append_audit_event(event)
    except Exception:
        # Audit trail must never break the pipeline.
        logger.warning("audit_append_failed session_id=%s code=%s", session_id, code, exc_info=True)
