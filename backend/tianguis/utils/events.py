from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from tianguis.extensions import db
from tianguis.models import AuditEvent
from tianguis.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    """Stage an audit row in the caller's transaction.

    The row commits or rolls back together with the action it describes.
    """
    key = (idempotency_key or "").strip()[:180] or None
    if key:
        existing = AuditEvent.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing

    event = AuditEvent(
        event_type=(event_type or "unknown").strip()[:80],
        actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:64] if subject_id is not None else None,
        request_id=(get_request_id() or "").strip()[:80] or None,
        idempotency_key=key,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=_safe_json(metadata or {}),
        created_at=datetime.utcnow(),
    )
    db.session.add(event)
    logger.info("audit_event type=%s subject=%s:%s actor=%s", event.event_type, subject_type, subject_id, actor_user_id)
    return event
