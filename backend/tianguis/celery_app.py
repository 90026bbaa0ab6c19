from __future__ import annotations

import json
import logging
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

logger = logging.getLogger("tianguis.tasks")

PAYMENTS_QUEUE = "payments"
EXPIRE_ORDERS_TASK = "tianguis.tasks.payment_tasks.expire_unpaid_orders"

_SIGNALS_BOUND = False


def _task_subject(kwargs) -> dict:
    kwargs = kwargs if isinstance(kwargs, dict) else {}
    subject = {"trace_id": str(kwargs.get("trace_id") or "")}
    if kwargs.get("order_id") is not None:
        subject["order_id"] = kwargs.get("order_id")
    return subject


def _bind_task_observers() -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, kwargs=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
            **_task_subject(kwargs),
        }
        logger.error(json.dumps(payload, default=str))

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
            **_task_subject(getattr(request, "kwargs", None)),
        }
        logger.warning(json.dumps(payload, default=str))

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    """Build the worker app from the Flask app's settings.

    Webhook processing and refunds run on the ``payments`` queue; the
    unpaid-order sweep is scheduled on beat.
    """
    cfg = flask_app.config
    celery = Celery(
        flask_app.import_name,
        broker=cfg["CELERY_BROKER_URL"],
        backend=cfg["CELERY_RESULT_BACKEND"],
    )
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        task_routes={
            "tianguis.tasks.payment_tasks.process_payment_webhook": {"queue": PAYMENTS_QUEUE},
            "tianguis.tasks.payment_tasks.refund_order_payment": {"queue": PAYMENTS_QUEUE},
        },
        beat_schedule={
            "expire-unpaid-orders": {
                "task": EXPIRE_ORDERS_TASK,
                "schedule": float(cfg["ORDER_EXPIRY_INTERVAL_SECONDS"]),
            },
        },
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.autodiscover_tasks(["tianguis.tasks"], related_name="payment_tasks")
    _bind_task_observers()
    return celery
