from __future__ import annotations

import logging
from datetime import datetime

from tianguis.errors import ConflictError, PreconditionFailed
from tianguis.models import Order
from tianguis.services.order_service import OrderStatus, cancel_order

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def expire_unpaid_orders(*, now: datetime | None = None, limit: int = 500) -> dict:
    """Cancel online orders whose payment window has lapsed.

    An order that was paid or cancelled concurrently is skipped; the
    cancellation itself is version-checked like any other transition.
    """
    now = now or _now()
    rows = (
        Order.query.filter(
            Order.status == OrderStatus.PENDING_PAYMENT,
            Order.expires_at.isnot(None),
            Order.expires_at <= now,
        )
        .order_by(Order.expires_at.asc(), Order.id.asc())
        .limit(int(limit))
        .all()
    )
    order_ids = [int(o.id) for o in rows]

    expired = 0
    skipped = 0
    for order_id in order_ids:
        try:
            cancel_order(None, order_id, reason="payment_window_expired")
            expired += 1
        except (ConflictError, PreconditionFailed) as e:
            skipped += 1
            logger.info("order_expiry_skipped order_id=%s code=%s", order_id, e.code)

    result = {
        "ok": True,
        "scanned": len(order_ids),
        "expired": expired,
        "skipped": skipped,
        "ts": _now().isoformat(),
    }
    if expired:
        logger.info("order_expiry_run expired=%s skipped=%s", expired, skipped)
    return result
