from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from tianguis.extensions import db
from tianguis.jobs.order_expiry_runner import expire_unpaid_orders
from tianguis.models import Order


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(bind=True, name="tianguis.tasks.payment_tasks.process_payment_webhook", max_retries=8)
def process_payment_webhook_task(
    self,
    *,
    payload: dict,
    raw_text: str = "",
    signature: str | None = None,
    source: str = "queued",
    trace_id: str = "",
):
    from tianguis.services.payment_webhook_service import process_payment_webhook

    started = time.perf_counter()
    body, status = process_payment_webhook(
        payload=payload,
        raw=(raw_text or "").encode("utf-8"),
        signature=signature,
        source=source,
    )
    if int(status) >= 500 and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "process_payment_webhook",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            error=body.get("error"),
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(str(body.get("error") or "webhook_retry")), countdown=countdown)
    _task_log(
        "process_payment_webhook",
        status="ok" if body.get("ok") else "failed",
        started_at=started,
        trace_id=trace_id,
        order_id=body.get("order_id"),
        error=body.get("error"),
    )
    return body


@shared_task(name="tianguis.tasks.payment_tasks.expire_unpaid_orders")
def expire_unpaid_orders_task(limit: int = 500):
    started = time.perf_counter()
    result = expire_unpaid_orders(limit=int(limit))
    _task_log("expire_unpaid_orders", status="ok", started_at=started, expired=result.get("expired"))
    return result


@shared_task(bind=True, name="tianguis.tasks.payment_tasks.refund_order_payment", max_retries=5)
def refund_order_payment_task(self, *, order_id: int, trace_id: str = ""):
    from tianguis.services.order_service import execute_refund

    started = time.perf_counter()
    order = db.session.get(Order, int(order_id))
    if order is None:
        _task_log("refund_order_payment", status="missing", started_at=started, trace_id=trace_id, order_id=order_id)
        return {"ok": False, "error": "ORDER_NOT_FOUND"}
    result = execute_refund(order)
    if not result.get("ok") and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "refund_order_payment",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            order_id=order_id,
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(str(result.get("error") or "refund_failed")), countdown=countdown)
    _task_log("refund_order_payment", status="ok" if result.get("ok") else "failed", started_at=started, order_id=order_id)
    return result
