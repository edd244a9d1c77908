from __future__ import annotations

"""
Audit trail for session, flag and job lifecycle events.

Events carry codes and identifiers only. Transcript text, matched phrases and
audio never go into `detail`.
"""

import datetime as _dt
import logging
from typing import Optional

from .contracts import AuditEvent, AuditEventType
from .store import InMemoryClinicalStore

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 200


def _clip(detail: Optional[str]) -> str:
    single_line = " ".join((detail or "").split())
    if len(single_line) <= MAX_DETAIL_CHARS:
        return single_line
    return f"{single_line[:MAX_DETAIL_CHARS]}..."


def log_event(
    store: InMemoryClinicalStore,
    session_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> None:
    """Append one audit event; a failing audit sink is logged and never raised."""
    try:
        store.append_audit_event(
            session_id,
            AuditEvent(
                ts_iso=_dt.datetime.now(_dt.timezone.utc).isoformat(),
                session_id=session_id,
                type=event_type,
                code=code,
                detail=_clip(detail),
                duration_ms=duration_ms,
            ),
        )
    except Exception:
        logger.exception("audit_event_failed session_id=%s type=%s code=%s", session_id, event_type, code)
