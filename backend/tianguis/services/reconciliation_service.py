from __future__ import annotations

import logging
from datetime import datetime

from tianguis.extensions import db
from tianguis.models import FUND_RELEASABLE_STATUSES, Order, Payout
from tianguis.services.payout_service import create_payout_for_order
from tianguis.services.transitions import atomic_transition
from tianguis.utils.events import log_event

logger = logging.getLogger(__name__)


def reconcile_payouts(*, repair: bool = False, actor=None, limit: int = 1000) -> dict:
    """Compare fund-releasable orders against the payout ledger.

    Reports orders with no payout row and orders whose payout_status
    projection has drifted from the payout. With repair=True the missing
    payouts are created and drifted projections rewritten.
    """
    orders = (
        Order.query.filter(Order.status.in_(FUND_RELEASABLE_STATUSES))
        .order_by(Order.id.asc())
        .limit(max(1, int(limit or 1000)))
        .all()
    )
    payouts = {
        int(p.order_id): p
        for p in Payout.query.filter(Payout.order_id.in_([int(o.id) for o in orders] or [0])).all()
    }

    missing = []
    drift = []
    for order in orders:
        payout = payouts.get(int(order.id))
        if payout is None:
            missing.append(int(order.id))
        elif (order.payout_status or "") != (payout.status or ""):
            drift.append(
                {
                    "order_id": int(order.id),
                    "payout_id": int(payout.id),
                    "order_payout_status": order.payout_status or None,
                    "payout_status": payout.status,
                }
            )

    # Orders outside the releasable states must never carry a payout.
    orphans = [
        int(p.order_id)
        for p in Payout.query.join(Order, Order.id == Payout.order_id)
        .filter(~Order.status.in_(FUND_RELEASABLE_STATUSES))
        .all()
    ]

    repaired = {"payouts_created": 0, "projections_fixed": 0}
    if repair and (missing or drift):
        with atomic_transition("Payout reconciliation"):
            for order_id in missing:
                create_payout_for_order(db.session.get(Order, order_id))
                repaired["payouts_created"] += 1
            for item in drift:
                order = db.session.get(Order, item["order_id"])
                order.payout_status = item["payout_status"]
                db.session.add(order)
                repaired["projections_fixed"] += 1
            log_event(
                "reconciliation.payouts_repaired",
                actor_user_id=int(actor.id) if actor is not None else None,
                subject_type="payouts",
                subject_id="ledger",
                severity="WARN",
                metadata={"missing": missing, "drift": drift},
            )

    summary = {
        "ok": True,
        "scope": "payout_ledger",
        "order_count": len(orders),
        "missing_payouts": missing,
        "projection_drift": drift,
        "orphan_payouts": orphans,
        "drift_count": len(missing) + len(drift) + len(orphans),
        "repaired": repaired,
        "generated_at": datetime.utcnow().isoformat(),
    }
    if summary["drift_count"]:
        logger.warning(
            "payout_reconciliation missing=%s drift=%s orphans=%s repair=%s",
            len(missing),
            len(drift),
            len(orphans),
            repair,
        )
    return summary
