from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import func

from tianguis.errors import AuthorizationError, NotFoundError, PreconditionFailed, ValidationError
from tianguis.extensions import db
from tianguis.models import (
    CLABE_LENGTH,
    FUND_RELEASABLE_STATUSES,
    Order,
    Payout,
    PayoutTransition,
    SellerBankProfile,
)
from tianguis.services.transitions import actor_fields, atomic_transition
from tianguis.utils.auth import is_admin
from tianguis.utils.commission import DEFAULT_PLATFORM_FEE_BPS, bps_fee_policy, compute_payout_split
from tianguis.utils.events import log_event

logger = logging.getLogger(__name__)


class PayoutStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)
    ALLOWED = {
        PENDING: {PROCESSING, COMPLETED},
        PROCESSING: {COMPLETED, FAILED},
        FAILED: {PENDING},
        COMPLETED: set(),
    }


# action -> target status
PAYOUT_ACTIONS = {
    "mark_processing": PayoutStatus.PROCESSING,
    "mark_completed": PayoutStatus.COMPLETED,
    "mark_failed": PayoutStatus.FAILED,
    "retry": PayoutStatus.PENDING,
}


def platform_fee_func():
    fee_func = current_app.config.get("PLATFORM_FEE_FUNC")
    if callable(fee_func):
        return fee_func
    return bps_fee_policy(int(current_app.config.get("PLATFORM_FEE_BPS", DEFAULT_PLATFORM_FEE_BPS)))


def _record_payout_transition(payout: Payout, from_status: str, to_status: str, *, actor=None, reason: str = ""):
    actor_type, actor_id = actor_fields(actor)
    row = PayoutTransition(
        payout_id=int(payout.id),
        from_status=from_status or "",
        to_status=to_status,
        actor_type=actor_type,
        actor_id=actor_id,
        reason=(reason or "")[:240],
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row


def create_payout_for_order(order: Order, *, fee_func=None) -> Payout:
    """Stage the seller payout for a fund-releasable order.

    Runs inside the caller's transaction (completion or dispute release);
    nothing is committed here. Returns the existing payout if one is
    already recorded for the order.
    """
    if (order.status or "") not in FUND_RELEASABLE_STATUSES:
        raise PreconditionFailed(
            f"Order {order.id} is not releasable (status={order.status})",
            code="ORDER_NOT_RELEASABLE",
        )

    existing = Payout.query.filter_by(order_id=int(order.id)).first()
    if existing:
        return existing

    split = compute_payout_split(order.total_amount, order.currency, fee_func or platform_fee_func())
    payout = Payout(
        order_id=int(order.id),
        seller_id=int(order.seller_id),
        gross_amount=split["gross_amount"],
        platform_fee=split["platform_fee"],
        payout_amount=split["payout_amount"],
        currency=order.currency or "MXN",
        status=PayoutStatus.PENDING,
        attempts=0,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.session.add(payout)
    db.session.flush()
    _record_payout_transition(payout, "", PayoutStatus.PENDING, reason=f"order_{order.status}")
    order.payout_status = PayoutStatus.PENDING
    db.session.add(order)
    log_event(
        "payout.created",
        subject_type="payout",
        subject_id=payout.id,
        idempotency_key=f"payout_created:{int(order.id)}",
        metadata={
            "order_id": int(order.id),
            "gross_amount": split["gross_amount"],
            "platform_fee": split["platform_fee"],
            "payout_amount": split["payout_amount"],
        },
    )
    return payout


def _load_payout(payout_id: int) -> Payout:
    payout = db.session.get(Payout, int(payout_id))
    if not payout:
        raise NotFoundError("Payout not found", code="PAYOUT_NOT_FOUND")
    return payout


def payout_for_order(order_id: int) -> Payout:
    payout = Payout.query.filter_by(order_id=int(order_id)).first()
    if not payout:
        raise NotFoundError("No payout recorded for this order", code="PAYOUT_NOT_FOUND")
    return payout


def _require_complete_bank_profile(seller_id: int) -> SellerBankProfile:
    profile = SellerBankProfile.query.filter_by(user_id=int(seller_id)).first()
    if not profile:
        raise PreconditionFailed("Seller has no bank profile on file", code="BANK_PROFILE_MISSING")
    if not profile.is_complete():
        raise PreconditionFailed("Seller bank profile is incomplete", code="BANK_PROFILE_INCOMPLETE")
    return profile


def advance_payout(
    actor,
    payout_id: int,
    action: str,
    *,
    reference: str | None = None,
    reason: str | None = None,
) -> Payout:
    """Move a payout along pending -> processing -> completed/failed.

    `actor` is the operating admin, or None for an automated worker.
    """
    if actor is not None and not is_admin(actor):
        raise AuthorizationError("Only operators may advance payouts", code="ADMIN_REQUIRED")

    action = (action or "").strip().lower()
    target = PAYOUT_ACTIONS.get(action)
    if not target:
        raise ValidationError(
            f"action must be one of {', '.join(sorted(PAYOUT_ACTIONS))}",
            code="INVALID_ACTION",
        )

    payout = _load_payout(payout_id)
    current = (payout.status or "").strip().lower()
    if target not in PayoutStatus.ALLOWED.get(current, set()):
        raise PreconditionFailed(
            f"Payout cannot go from {current} to {target}",
            code="PAYOUT_INVALID_STATUS",
        )

    if target in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
        _require_complete_bank_profile(payout.seller_id)

    order = db.session.get(Order, int(payout.order_id))
    now = datetime.utcnow()
    with atomic_transition(f"Payout {payout.id}"):
        if target == PayoutStatus.PROCESSING:
            payout.attempts = int(payout.attempts or 0) + 1
        elif target == PayoutStatus.COMPLETED:
            payout.payout_at = now
            ref = (reference or "").strip()
            if ref:
                payout.payout_reference = ref[:255]
            payout.failure_reason = None
        elif target == PayoutStatus.FAILED:
            payout.failure_reason = ((reason or "").strip() or "rejected_by_rail")[:240]
        elif target == PayoutStatus.PENDING:
            payout.failure_reason = None

        payout.status = target
        payout.updated_at = now
        db.session.add(payout)
        _record_payout_transition(payout, current, target, actor=actor, reason=reason or action)

        # Keep the order's read-model projection in step.
        if order is not None:
            order.payout_status = target
            db.session.add(order)

        log_event(
            f"payout.{target}",
            actor_user_id=int(actor.id) if actor is not None else None,
            subject_type="payout",
            subject_id=payout.id,
            metadata={"from": current, "to": target, "reference": payout.payout_reference, "reason": reason},
        )
    logger.info("payout_advanced id=%s order_id=%s %s->%s", payout.id, payout.order_id, current, target)
    return payout


def list_payouts(*, status: str | None = None, seller_id: int | None = None, limit: int = 100) -> list[Payout]:
    q = Payout.query
    status = (status or "").strip().lower()
    if status:
        if status not in PayoutStatus.ALL:
            raise ValidationError(f"Unknown payout status: {status}", code="INVALID_STATUS")
        q = q.filter(Payout.status == status)
    if seller_id is not None:
        q = q.filter(Payout.seller_id == int(seller_id))
    limit = max(1, min(int(limit or 100), 500))
    return q.order_by(Payout.created_at.desc(), Payout.id.desc()).limit(limit).all()


def payout_stats() -> dict:
    rows = (
        db.session.query(Payout.status, func.count(Payout.id), func.coalesce(func.sum(Payout.payout_amount), 0))
        .group_by(Payout.status)
        .all()
    )
    stats = {s: {"count": 0, "amount": "0.00"} for s in PayoutStatus.ALL}
    for status, count, amount in rows:
        stats[str(status)] = {"count": int(count or 0), "amount": str(Decimal(str(amount or 0)).quantize(Decimal("0.01")))}
    return stats


def get_bank_profile(user_id: int) -> SellerBankProfile | None:
    return SellerBankProfile.query.filter_by(user_id=int(user_id)).first()


def upsert_bank_profile(user, *, clabe: str, bank_name: str, holder_name: str) -> SellerBankProfile:
    clabe = "".join((clabe or "").split())
    bank_name = (bank_name or "").strip()
    holder_name = (holder_name or "").strip()
    if len(clabe) != CLABE_LENGTH or not clabe.isdigit():
        raise ValidationError(f"clabe must be exactly {CLABE_LENGTH} digits", code="INVALID_CLABE")
    if not bank_name:
        raise ValidationError("bank_name is required", code="BANK_NAME_REQUIRED")
    if not holder_name:
        raise ValidationError("holder_name is required", code="HOLDER_NAME_REQUIRED")

    profile = get_bank_profile(user.id)
    now = datetime.utcnow()
    with atomic_transition("Bank profile", integrity_code="BANK_PROFILE_EXISTS"):
        if profile is None:
            profile = SellerBankProfile(user_id=int(user.id), created_at=now)
        profile.clabe = clabe
        profile.bank_name = bank_name[:120]
        profile.holder_name = holder_name[:160]
        profile.updated_at = now
        db.session.add(profile)
        log_event(
            "bank_profile.updated",
            actor_user_id=int(user.id),
            subject_type="user",
            subject_id=int(user.id),
            metadata={"bank_name": profile.bank_name, "clabe_last4": clabe[-4:]},
        )
    return profile
