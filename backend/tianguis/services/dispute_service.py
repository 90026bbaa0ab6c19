from __future__ import annotations

import logging
from datetime import datetime

from tianguis.errors import AuthorizationError, ConflictError, NotFoundError, PreconditionFailed, ValidationError
from tianguis.extensions import db
from tianguis.models import Dispute, Order
from tianguis.services.order_service import OrderStatus, apply_transition, load_order, request_refund
from tianguis.services.payout_service import create_payout_for_order
from tianguis.services.transitions import atomic_transition
from tianguis.utils.auth import is_arbitrator
from tianguis.utils.events import log_event

logger = logging.getLogger(__name__)

DISPUTE_REASONS = ("not_received", "not_as_described", "damaged", "other")
RESOLUTION_ACTIONS = {
    "refund": OrderStatus.RESOLVED_REFUND,
    "release": OrderStatus.RESOLVED_RELEASE,
}


def open_dispute(actor, order_id, *, reason: str, description: str = "") -> Dispute:
    """Freeze an in-flight order under dispute.

    Only a party may open one, and only while funds are still held.
    At most one dispute is ever open per order; a resolved dispute
    leaves the order terminal, so it cannot be reopened.
    """
    order = load_order(order_id)
    if order.party_role(actor.id) is None:
        raise AuthorizationError("Not a party to this order", code="NOT_ORDER_PARTY")
    reason = (reason or "").strip().lower()
    if reason not in DISPUTE_REASONS:
        raise ValidationError(f"reason must be one of {', '.join(DISPUTE_REASONS)}", code="INVALID_REASON")
    description = (description or "").strip()

    if Dispute.query.filter_by(open_order_id=int(order.id)).first():
        raise ConflictError("A dispute is already open for this order", code="DISPUTE_ALREADY_OPEN")
    if order.status in (OrderStatus.RESOLVED_REFUND, OrderStatus.RESOLVED_RELEASE):
        raise PreconditionFailed("Dispute for this order was already resolved", code="DISPUTE_ALREADY_RESOLVED")
    if order.status not in OrderStatus.FUNDS_HELD:
        raise PreconditionFailed(f"Order cannot be disputed while {order.status}", code="ORDER_NOT_DISPUTABLE")

    dispute = Dispute(
        order_id=int(order.id),
        open_order_id=int(order.id),
        raised_by=int(actor.id),
        reason=reason,
        description=description[:4000],
        status="open",
        created_at=datetime.utcnow(),
    )
    with atomic_transition(f"Order {order.id}", integrity_code="DISPUTE_ALREADY_OPEN"):
        db.session.add(dispute)
        order.disputed_from = order.status
        apply_transition(order, OrderStatus.DISPUTED, event="dispute_opened", actor=actor, reason=reason)
        log_event(
            "dispute.opened",
            actor_user_id=int(actor.id),
            subject_type="order",
            subject_id=order.id,
            severity="WARN",
            metadata={"reason": reason, "disputed_from": order.disputed_from},
        )
    logger.info("dispute_opened id=%s order_id=%s by=%s", dispute.id, order.id, actor.id)
    return dispute


def _load_dispute(dispute_id) -> Dispute:
    try:
        did = int(dispute_id)
    except (TypeError, ValueError):
        raise NotFoundError("Dispute not found", code="DISPUTE_NOT_FOUND")
    dispute = db.session.get(Dispute, did)
    if not dispute:
        raise NotFoundError("Dispute not found", code="DISPUTE_NOT_FOUND")
    return dispute


def resolve_dispute(actor, dispute_id, *, action: str, note: str) -> Dispute:
    """Arbitrate an open dispute: refund the buyer or release to the seller.

    A release goes through the same payout creation as a normal
    completion.
    """
    if not is_arbitrator(actor):
        raise AuthorizationError("Arbitrator role required", code="ARBITRATOR_REQUIRED")
    dispute = _load_dispute(dispute_id)
    order = db.session.get(Order, int(dispute.order_id))
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    if order.party_role(actor.id) is not None:
        raise AuthorizationError("Parties cannot arbitrate their own dispute", code="ARBITRATOR_IS_PARTY")

    note = (note or "").strip()
    if not note:
        raise ValidationError("A resolution note is required", code="RESOLUTION_NOTE_REQUIRED")
    action = (action or "").strip().lower()
    target = RESOLUTION_ACTIONS.get(action)
    if not target:
        raise ValidationError("action must be refund or release", code="INVALID_ACTION")

    if dispute.status != "open":
        raise PreconditionFailed("Dispute is already resolved", code="DISPUTE_NOT_OPEN")
    if order.status != OrderStatus.DISPUTED:
        raise PreconditionFailed(f"Order is {order.status}, not disputed", code="ORDER_NOT_DISPUTED")

    now = datetime.utcnow()
    with atomic_transition(f"Dispute {dispute.id}"):
        dispute.status = target
        dispute.resolution_note = note
        dispute.resolved_by = int(actor.id)
        dispute.resolved_at = now
        dispute.open_order_id = None
        db.session.add(dispute)

        apply_transition(order, target, event=f"dispute_{action}", actor=actor, reason=note[:240])
        if target == OrderStatus.RESOLVED_RELEASE:
            order.completed_at = now
            create_payout_for_order(order)
        else:
            order.refunded_at = now
        log_event(
            "dispute.resolved",
            actor_user_id=int(actor.id),
            subject_type="order",
            subject_id=order.id,
            severity="WARN",
            metadata={"dispute_id": int(dispute.id), "action": action, "note": note},
        )
    logger.info("dispute_resolved id=%s order_id=%s action=%s", dispute.id, order.id, action)

    if target == OrderStatus.RESOLVED_REFUND:
        request_refund(order)
    return dispute


def get_dispute_for(actor, dispute_id) -> Dispute:
    dispute = _load_dispute(dispute_id)
    if is_arbitrator(actor):
        return dispute
    order = db.session.get(Order, int(dispute.order_id))
    if order is None or order.party_role(actor.id) is None:
        raise AuthorizationError("Not a party to this dispute", code="NOT_ORDER_PARTY")
    return dispute


def list_disputes(*, status: str | None = None, limit: int = 100) -> list[Dispute]:
    q = Dispute.query
    status = (status or "").strip().lower()
    if status:
        q = q.filter(Dispute.status == status)
    limit = max(1, min(int(limit or 100), 500))
    return q.order_by(Dispute.created_at.desc(), Dispute.id.desc()).limit(limit).all()
