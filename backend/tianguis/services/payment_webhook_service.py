from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from tianguis.errors import ConflictError, NotFoundError, PreconditionFailed, ProcessorUnavailable, ValidationError
from tianguis.extensions import db
from tianguis.models import WebhookEvent
from tianguis.services.order_service import confirm_payment
from tianguis.utils.observability import get_request_id

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"

# Events in these states are never applied again.
_SETTLED_STATES = ("processed", "ignored")


def verify_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _extract_order_id(obj: dict):
    meta = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    raw = meta.get("order_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _finish(event: WebhookEvent, status: str, *, order_id=None, error: str | None = None) -> None:
    event.status = status
    event.order_id = order_id
    event.error = (error or "")[:2000] or None
    event.processed_at = datetime.utcnow()
    db.session.add(event)
    db.session.commit()


def process_payment_webhook(*, payload, raw: bytes, signature: str | None, source: str = "webhook") -> tuple[dict, int]:
    """Apply a processor payment notification; safe to deliver repeatedly.

    Returns (body, status). Non-2xx statuses ask the processor to retry;
    outcomes that no retry can change are acknowledged with 200.
    """
    secret = (current_app.config.get("PAYMENTS_WEBHOOK_SECRET") or "").strip()
    if secret and not verify_signature(raw or b"", signature, secret):
        return {"ok": False, "error": "INVALID_SIGNATURE"}, 400

    if not isinstance(payload, dict):
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "payload must be an object"}, 400
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type.strip():
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": "type is required"}, 400
    event_type = event_type.strip()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    transaction_id = str(obj.get("id") or "").strip()

    payload_hash = hashlib.sha256(raw or b"").hexdigest()
    event_id = str(payload.get("id") or "").strip()
    if not event_id:
        event_id = hashlib.sha256(f"{event_type}:{transaction_id}".encode("utf-8")).hexdigest()[:32]

    event = WebhookEvent.query.filter_by(provider=PROVIDER, event_id=event_id[:128]).first()
    if event and event.status in _SETTLED_STATES:
        return {"ok": True, "replayed": True, "order_id": event.order_id}, 200
    if event is None:
        event = WebhookEvent(
            provider=PROVIDER,
            event_id=event_id[:128],
            event_type=event_type[:64],
            transaction_id=transaction_id[:128] or None,
            status="received",
            request_id=(get_request_id() or "")[:64] or None,
            payload_hash=payload_hash,
            created_at=datetime.utcnow(),
        )
        db.session.add(event)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event claimed it first.
            db.session.rollback()
            return {"ok": True, "replayed": True}, 200

    if event_type != PAYMENT_SUCCEEDED_EVENT:
        _finish(event, "ignored")
        return {"ok": True, "ignored": True}, 200

    order_id = _extract_order_id(obj)
    if not transaction_id or order_id is None:
        _finish(event, "failed", error="ORDER_ID_MISSING")
        return {"ok": False, "error": "ORDER_ID_MISSING"}, 200

    try:
        order, replayed = confirm_payment(order_id, transaction_id)
    except (NotFoundError, PreconditionFailed, ValidationError) as e:
        logger.warning("payment_webhook_rejected source=%s order_id=%s code=%s", source, order_id, e.code)
        _finish(event, "failed", order_id=order_id, error=e.code)
        return {"ok": False, "error": e.code, "message": e.message, "order_id": order_id}, 200
    except (ProcessorUnavailable, ConflictError) as e:
        logger.warning("payment_webhook_retry source=%s order_id=%s code=%s", source, order_id, e.code)
        _finish(event, "retry", order_id=order_id, error=e.code)
        return {"ok": False, "error": e.code, "message": e.message, "order_id": order_id}, 503

    _finish(event, "processed", order_id=int(order.id))
    logger.info("payment_webhook_processed source=%s order_id=%s replayed=%s", source, order.id, replayed)
    return {"ok": True, "order_id": int(order.id), "replayed": bool(replayed)}, 200
