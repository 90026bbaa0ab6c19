from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from tianguis.services.payment_webhook_service import process_payment_webhook
from tianguis.utils.observability import get_request_id

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/payments")
def payments_webhook():
    raw = request.get_data() or b"{}"
    sig = request.headers.get("X-Webhook-Signature")
    payload = request.get_json(silent=True)

    if current_app.config.get("PAYMENTS_WEBHOOK_QUEUE"):
        from kombu.exceptions import OperationalError

        from tianguis.tasks.payment_tasks import process_payment_webhook_task

        try:
            process_payment_webhook_task.delay(
                payload=payload if isinstance(payload, dict) else {},
                raw_text=raw.decode("utf-8", errors="ignore"),
                signature=sig,
                source="api/webhooks/payments:queued",
                trace_id=get_request_id(),
            )
            return jsonify({"ok": True, "queued": True, "trace_id": get_request_id()}), 200
        except OperationalError:
            # Broker down: process inline rather than drop the event.
            logger.warning("payment_webhook_queue_unavailable trace_id=%s", get_request_id())

    body, status = process_payment_webhook(payload=payload, raw=raw, signature=sig, source="api/webhooks/payments")
    return jsonify(body), int(status)
