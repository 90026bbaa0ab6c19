from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app

from tianguis.errors import (
    AuthorizationError,
    NotFoundError,
    PreconditionFailed,
    ProcessorUnavailable,
    ValidationError,
)
from tianguis.extensions import db
from tianguis.integrations.common import (
    IntegrationMisconfiguredError,
    IntegrationRequestError,
    IntegrationTimeoutError,
)
from tianguis.integrations.payments.factory import build_payments_provider
from tianguis.models import Listing, Negotiation, Order, OrderTransition
from tianguis.services.payout_service import create_payout_for_order
from tianguis.services.transitions import atomic_transition, record_order_transition
from tianguis.utils.auth import is_admin, is_arbitrator
from tianguis.utils.commission import money_major_to_minor, to_decimal
from tianguis.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderStatus:
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    MEETUP_ARRANGED = "meetup_arranged"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    RESOLVED_REFUND = "resolved_refund"
    RESOLVED_RELEASE = "resolved_release"

    # Payment captured, funds held, order still moving.
    FUNDS_HELD = {PAID, MEETUP_ARRANGED, SHIPPED, DELIVERED}
    TERMINAL = {COMPLETED, CANCELLED, REFUNDED, RESOLVED_REFUND, RESOLVED_RELEASE}
    ALLOWED = {
        PENDING_PAYMENT: {PAID, CANCELLED},
        PAID: {MEETUP_ARRANGED, SHIPPED, COMPLETED, DISPUTED, REFUNDED},
        MEETUP_ARRANGED: {MEETUP_ARRANGED, COMPLETED, DISPUTED, REFUNDED},
        SHIPPED: {DELIVERED, COMPLETED, DISPUTED, REFUNDED},
        DELIVERED: {COMPLETED, DISPUTED, REFUNDED},
        DISPUTED: {RESOLVED_REFUND, RESOLVED_RELEASE},
        COMPLETED: set(),
        CANCELLED: set(),
        REFUNDED: set(),
        RESOLVED_REFUND: set(),
        RESOLVED_RELEASE: set(),
    }


class ConfirmationState:
    UNCONFIRMED = "unconfirmed"
    BUYER_CONFIRMED = "buyer_confirmed"
    SELLER_CONFIRMED = "seller_confirmed"
    CONFIRMED = "confirmed"

    @classmethod
    def after(cls, current: str, role: str) -> str:
        current = current or cls.UNCONFIRMED
        if role == "buyer":
            return cls.CONFIRMED if current == cls.SELLER_CONFIRMED else cls.BUYER_CONFIRMED
        return cls.CONFIRMED if current == cls.BUYER_CONFIRMED else cls.SELLER_CONFIRMED


ORDER_TYPES = ("meetup", "shipping")
PAYMENT_METHODS = ("online", "cash")


def _now():
    return datetime.utcnow()


def apply_transition(order: Order, to_status: str, *, event: str, actor=None, reason: str = "", metadata=None):
    """Move `order` to `to_status` and stage its timeline row. No commit."""
    current = (order.status or "").strip().lower()
    if to_status not in OrderStatus.ALLOWED.get(current, set()):
        raise PreconditionFailed(
            f"Order {order.id} cannot go from {current} to {to_status}",
            code="INVALID_TRANSITION",
        )
    record_order_transition(
        order,
        event=event,
        from_status=current,
        to_status=to_status,
        actor=actor,
        reason=reason,
        metadata=metadata,
    )
    order.status = to_status
    order.updated_at = _now()
    db.session.add(order)
    return order


def load_order(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    order = db.session.get(Order, oid)
    if not order:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    return order


def _require_party(order: Order, actor) -> str:
    role = order.party_role(getattr(actor, "id", None))
    if role is None:
        raise AuthorizationError("Not a party to this order", code="NOT_ORDER_PARTY")
    return role


def get_order_for(actor, order_id) -> Order:
    order = load_order(order_id)
    if order.party_role(actor.id) is None and not is_arbitrator(actor):
        raise AuthorizationError("Not a party to this order", code="NOT_ORDER_PARTY")
    return order


def list_orders_for(actor, *, as_role: str | None = None, status: str | None = None, limit: int = 100) -> list[Order]:
    q = Order.query
    as_role = (as_role or "").strip().lower()
    if as_role == "buyer":
        q = q.filter(Order.buyer_id == int(actor.id))
    elif as_role == "seller":
        q = q.filter(Order.seller_id == int(actor.id))
    else:
        q = q.filter((Order.buyer_id == int(actor.id)) | (Order.seller_id == int(actor.id)))
    status = (status or "").strip().lower()
    if status:
        q = q.filter(Order.status == status)
    limit = max(1, min(int(limit or 100), 500))
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def order_timeline(actor, order_id) -> list[OrderTransition]:
    order = get_order_for(actor, order_id)
    return (
        OrderTransition.query.filter_by(order_id=int(order.id))
        .order_by(OrderTransition.created_at.asc(), OrderTransition.id.asc())
        .all()
    )


def _accepted_price(negotiation_id, buyer, listing: Listing) -> tuple[Decimal, Negotiation]:
    try:
        nid = int(negotiation_id)
    except (TypeError, ValueError):
        raise ValidationError("negotiation_id must be an integer", code="INVALID_NEGOTIATION_ID")
    negotiation = db.session.get(Negotiation, nid)
    if not negotiation:
        raise NotFoundError("Negotiation not found", code="NEGOTIATION_NOT_FOUND")
    if int(negotiation.product_id) != int(listing.id) or int(negotiation.proposer_id) != int(buyer.id):
        raise PreconditionFailed("Negotiation does not belong to this purchase", code="NEGOTIATION_MISMATCH")
    if negotiation.status != "accepted" or negotiation.final_price is None:
        raise PreconditionFailed("Negotiation has not been accepted", code="NEGOTIATION_NOT_ACCEPTED")
    return Decimal(negotiation.final_price), negotiation


def create_order(
    buyer,
    *,
    product_id,
    order_type: str,
    payment_method: str = "online",
    negotiation_id=None,
    shipping_address: str | None = None,
) -> Order:
    order_type = (order_type or "").strip().lower()
    payment_method = (payment_method or "online").strip().lower()
    if order_type not in ORDER_TYPES:
        raise ValidationError("order_type must be meetup or shipping", code="INVALID_ORDER_TYPE")
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError("payment_method must be online or cash", code="INVALID_PAYMENT_METHOD")
    if payment_method == "cash" and order_type != "meetup":
        raise ValidationError("Cash payment is only available for meetups", code="CASH_REQUIRES_MEETUP")
    shipping_address = (shipping_address or "").strip()
    if order_type == "shipping" and not shipping_address:
        raise ValidationError("shipping_address is required for shipping orders", code="SHIPPING_ADDRESS_REQUIRED")

    try:
        pid = int(product_id)
    except (TypeError, ValueError):
        raise ValidationError("product_id must be an integer", code="INVALID_PRODUCT_ID")
    listing = db.session.get(Listing, pid)
    if not listing:
        raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")
    if int(listing.seller_id) == int(buyer.id):
        raise PreconditionFailed("Cannot buy your own product", code="CANNOT_BUY_OWN_PRODUCT")
    if (listing.status or "") != "active":
        raise PreconditionFailed("Product is no longer available", code="PRODUCT_NOT_AVAILABLE")

    negotiation = None
    if negotiation_id is not None:
        product_amount, negotiation = _accepted_price(negotiation_id, buyer, listing)
    else:
        product_amount = Decimal(listing.price)
    product_amount = to_decimal(product_amount)
    shipping_fee = Decimal("0.00")
    if order_type == "shipping":
        shipping_fee = to_decimal(current_app.config.get("SHIPPING_FLAT_FEE", 0))
    total = product_amount + shipping_fee
    if total <= 0:
        raise ValidationError("Order total must be positive", code="INVALID_AMOUNT")

    now = _now()
    order = Order(
        buyer_id=int(buyer.id),
        seller_id=int(listing.seller_id),
        product_id=int(listing.id),
        negotiation_id=int(negotiation.id) if negotiation else None,
        product_amount=product_amount,
        shipping_fee=shipping_fee,
        total_amount=total,
        currency=listing.currency or current_app.config.get("DEFAULT_CURRENCY", "MXN"),
        order_type=order_type,
        payment_method=payment_method,
        status=OrderStatus.PENDING_PAYMENT,
        shipping_address=shipping_address or None,
        confirmation_state=ConfirmationState.UNCONFIRMED,
        created_at=now,
        updated_at=now,
    )
    if payment_method == "online":
        ttl_hours = int(current_app.config.get("ORDER_PAYMENT_TTL_HOURS", 24))
        order.expires_at = now + timedelta(hours=ttl_hours)

    with atomic_transition(f"Order for product {listing.id}"):
        db.session.add(order)
        db.session.flush()
        record_order_transition(
            order,
            event="created",
            from_status="",
            to_status=OrderStatus.PENDING_PAYMENT,
            actor=buyer,
            metadata={"total_amount": total, "order_type": order_type, "payment_method": payment_method},
        )

        if payment_method == "cash":
            # Cash changes hands at the meetup; the order holds no processor funds.
            order.payment_reference = f"cash:{int(order.id)}"
            order.paid_at = now
            apply_transition(order, OrderStatus.PAID, event="cash_selected", actor=buyer)
            listing.status = "sold"
            db.session.add(listing)

        log_event(
            "order.created",
            actor_user_id=int(buyer.id),
            subject_type="order",
            subject_id=order.id,
            metadata={"product_id": int(listing.id), "total_amount": total, "payment_method": payment_method},
        )
    logger.info("order_created id=%s buyer=%s seller=%s total=%s", order.id, order.buyer_id, order.seller_id, total)
    return order


def confirm_payment(order_id, transaction_id: str, *, actor=None, provider=None) -> tuple[Order, bool]:
    """Confirm an online payment against the processor.

    Returns (order, replayed). Replaying the same transaction id on an
    already-paid order is a no-op. A processor timeout or error leaves
    the order untouched and raises ProcessorUnavailable.
    """
    ref = (transaction_id or "").strip()
    if not ref:
        raise ValidationError("transaction_id is required", code="TRANSACTION_ID_REQUIRED")
    order = load_order(order_id)
    if actor is not None and int(actor.id) != int(order.buyer_id) and not is_admin(actor):
        raise AuthorizationError("Only the buyer may confirm payment", code="NOT_BUYER")

    if order.payment_reference == ref and order.status != OrderStatus.PENDING_PAYMENT:
        return order, True
    if order.status != OrderStatus.PENDING_PAYMENT:
        code = "ORDER_ALREADY_PAID" if order.paid_at else "ORDER_NOT_AWAITING_PAYMENT"
        raise PreconditionFailed(f"Order {order.id} is {order.status}", code=code)
    if order.payment_method != "online":
        raise PreconditionFailed("Order is not paid online", code="NOT_ONLINE_PAYMENT")
    if Order.query.filter(Order.payment_reference == ref, Order.id != order.id).first():
        raise PreconditionFailed("Transaction already applied to another order", code="TRANSACTION_ALREADY_USED")
    listing = db.session.get(Listing, int(order.product_id))
    if listing is not None and (listing.status or "") != "active":
        raise PreconditionFailed("Product is no longer available", code="PRODUCT_NOT_AVAILABLE")

    try:
        provider = provider or build_payments_provider(current_app.config)
        result = provider.verify(ref)
    except IntegrationTimeoutError as e:
        logger.warning("payment_verify_timeout order_id=%s txn=%s", order.id, ref)
        raise ProcessorUnavailable("Payment processor timed out; retry later", code="PAYMENT_PROCESSOR_TIMEOUT") from e
    except IntegrationRequestError as e:
        logger.warning("payment_verify_failed order_id=%s txn=%s err=%s", order.id, ref, e)
        raise ProcessorUnavailable("Payment processor error; retry later") from e
    except IntegrationMisconfiguredError as e:
        logger.error("payment_provider_misconfigured err=%s", e)
        raise ProcessorUnavailable("Payments are not configured", code="PAYMENTS_MISCONFIGURED") from e

    if not result.succeeded:
        raise PreconditionFailed(
            f"Payment not successful (status={result.status})",
            code="PAYMENT_NOT_SUCCESSFUL",
            details={"processor_status": result.status},
        )
    expected_minor = money_major_to_minor(order.total_amount)
    if result.amount_minor and int(result.amount_minor) != expected_minor:
        raise PreconditionFailed(
            "Paid amount does not match order total",
            code="PAYMENT_AMOUNT_MISMATCH",
            details={"expected_minor": expected_minor, "paid_minor": int(result.amount_minor)},
        )

    with atomic_transition(f"Order {order.id}", integrity_code="TRANSACTION_ALREADY_USED"):
        order.payment_reference = ref[:128]
        order.paid_at = _now()
        order.expires_at = None
        apply_transition(order, OrderStatus.PAID, event="payment_confirmed", actor=actor, metadata={"transaction_id": ref})
        if listing is not None:
            # Only one buyer may take an active listing.
            claimed = (
                Listing.query.filter_by(id=int(listing.id), status="active")
                .update({"status": "sold"}, synchronize_session=False)
            )
            if not claimed:
                raise PreconditionFailed("Product is no longer available", code="PRODUCT_NOT_AVAILABLE")
        log_event(
            "order.paid",
            actor_user_id=int(actor.id) if actor is not None else None,
            subject_type="order",
            subject_id=order.id,
            idempotency_key=f"order_paid:{int(order.id)}",
            metadata={"transaction_id": ref, "amount_minor": expected_minor},
        )
    logger.info("order_paid id=%s txn=%s", order.id, ref)
    return order, False


def _parse_meetup_time(value):
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError("meetup_time must be an ISO-8601 timestamp", code="INVALID_MEETUP_TIME")


def _parse_coord(value, name: str, bound: float):
    if value in (None, ""):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", code="INVALID_COORDINATES")
    if abs(parsed) > bound:
        raise ValidationError(f"{name} out of range", code="INVALID_COORDINATES")
    return parsed


def arrange_meetup(actor, order_id, *, location: str, meetup_time=None, lat=None, lng=None) -> Order:
    """Set (or overwrite) meetup details. Either party may call this."""
    order = load_order(order_id)
    _require_party(order, actor)
    if order.order_type != "meetup":
        raise PreconditionFailed("Order is not a meetup order", code="NOT_MEETUP_ORDER")
    if order.status not in (OrderStatus.PAID, OrderStatus.MEETUP_ARRANGED):
        raise PreconditionFailed(f"Meetup cannot be arranged while {order.status}", code="ORDER_NOT_ARRANGEABLE")
    location = (location or "").strip()
    if not location:
        raise ValidationError("location is required", code="MEETUP_LOCATION_REQUIRED")
    when = _parse_meetup_time(meetup_time)
    lat = _parse_coord(lat, "lat", 90.0)
    lng = _parse_coord(lng, "lng", 180.0)

    event = "meetup_updated" if order.status == OrderStatus.MEETUP_ARRANGED else "meetup_arranged"
    with atomic_transition(f"Order {order.id}"):
        order.meetup_location = location[:255]
        order.meetup_time = when
        order.meetup_lat = lat
        order.meetup_lng = lng
        apply_transition(
            order,
            OrderStatus.MEETUP_ARRANGED,
            event=event,
            actor=actor,
            metadata={"location": order.meetup_location, "time": when},
        )
    return order


def ship_order(actor, order_id, *, carrier: str, tracking_number: str) -> Order:
    order = load_order(order_id)
    if order.party_role(actor.id) != "seller":
        raise AuthorizationError("Only the seller may ship", code="NOT_SELLER")
    if order.order_type != "shipping":
        raise PreconditionFailed("Order is not a shipping order", code="NOT_SHIPPING_ORDER")
    if order.tracking_number:
        raise PreconditionFailed("Shipping details already recorded", code="SHIPPING_ALREADY_SET")
    if order.status != OrderStatus.PAID:
        raise PreconditionFailed(f"Order cannot be shipped while {order.status}", code="ORDER_NOT_SHIPPABLE")
    carrier = (carrier or "").strip()
    tracking_number = (tracking_number or "").strip()
    if not carrier or not tracking_number:
        raise ValidationError("carrier and tracking_number are required", code="TRACKING_REQUIRED")

    with atomic_transition(f"Order {order.id}"):
        order.shipping_carrier = carrier[:64]
        order.tracking_number = tracking_number[:128]
        order.shipped_at = _now()
        apply_transition(
            order,
            OrderStatus.SHIPPED,
            event="shipped",
            actor=actor,
            metadata={"carrier": order.shipping_carrier, "tracking_number": order.tracking_number},
        )
    return order


def mark_delivered(actor, order_id) -> Order:
    order = load_order(order_id)
    if order.party_role(actor.id) is None and not is_admin(actor):
        raise AuthorizationError("Not a party to this order", code="NOT_ORDER_PARTY")
    if order.status != OrderStatus.SHIPPED:
        raise PreconditionFailed(f"Order cannot be delivered while {order.status}", code="ORDER_NOT_SHIPPED")
    with atomic_transition(f"Order {order.id}"):
        order.delivered_at = _now()
        apply_transition(order, OrderStatus.DELIVERED, event="delivered", actor=actor)
    return order


def is_confirmable(order: Order) -> bool:
    status = order.status or ""
    if status in (OrderStatus.MEETUP_ARRANGED, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
        return True
    return status == OrderStatus.PAID and order.order_type == "meetup"


def confirm_completion(actor, order_id) -> Order:
    """Record one party's completion confirmation.

    The second confirmation completes the order and stages the seller
    payout in the same commit. Confirmation flags are write-once.
    """
    order = load_order(order_id)
    role = _require_party(order, actor)
    if order.status == OrderStatus.DISPUTED:
        raise PreconditionFailed("Order is under dispute", code="ORDER_DISPUTED")
    stamp_attr = "buyer_confirmed_at" if role == "buyer" else "seller_confirmed_at"
    if getattr(order, stamp_attr):
        raise PreconditionFailed(f"{role.capitalize()} already confirmed", code="ALREADY_CONFIRMED")
    if not is_confirmable(order):
        raise PreconditionFailed(f"Order cannot be confirmed while {order.status}", code="ORDER_NOT_CONFIRMABLE")

    now = _now()
    next_state = ConfirmationState.after(order.confirmation_state, role)
    with atomic_transition(f"Order {order.id}"):
        setattr(order, stamp_attr, now)
        record_order_transition(
            order,
            event=f"{role}_confirmed",
            from_status=order.status,
            to_status=order.status,
            actor=actor,
            metadata={"confirmation_state": next_state},
        )
        order.confirmation_state = next_state
        order.updated_at = now
        db.session.add(order)

        if next_state == ConfirmationState.CONFIRMED:
            apply_transition(order, OrderStatus.COMPLETED, event="completed", actor=actor)
            order.completed_at = now
            create_payout_for_order(order)
            log_event(
                "order.completed",
                actor_user_id=int(actor.id),
                subject_type="order",
                subject_id=order.id,
                metadata={"total_amount": order.total_amount},
            )
    logger.info("order_confirmed id=%s role=%s state=%s", order.id, role, order.confirmation_state)
    return order


def cancel_order(actor, order_id, *, reason: str = "") -> Order:
    """Cancel an unpaid order. `actor` None means the expiry job."""
    order = load_order(order_id)
    if actor is not None:
        role = order.party_role(actor.id)
        if role != "buyer" and not is_admin(actor):
            raise AuthorizationError("Only the buyer may cancel", code="NOT_BUYER")
    if order.status != OrderStatus.PENDING_PAYMENT:
        raise PreconditionFailed(f"Order cannot be cancelled while {order.status}", code="ORDER_NOT_CANCELLABLE")
    with atomic_transition(f"Order {order.id}"):
        order.cancelled_at = _now()
        order.expires_at = None
        apply_transition(
            order,
            OrderStatus.CANCELLED,
            event="cancelled" if actor is not None else "expired",
            actor=actor,
            reason=reason,
        )
    return order


def admin_refund(admin, order_id, *, note: str) -> Order:
    """Operator-forced refund of an order whose funds are still held."""
    if not is_admin(admin):
        raise AuthorizationError("Admin required", code="ADMIN_REQUIRED")
    note = (note or "").strip()
    if not note:
        raise ValidationError("A refund note is required", code="REFUND_NOTE_REQUIRED")
    order = load_order(order_id)
    if order.status not in OrderStatus.FUNDS_HELD:
        raise PreconditionFailed(f"Order cannot be refunded while {order.status}", code="ORDER_NOT_REFUNDABLE")
    with atomic_transition(f"Order {order.id}"):
        order.refunded_at = _now()
        apply_transition(order, OrderStatus.REFUNDED, event="admin_refund", actor=admin, reason=note)
        log_event(
            "order.refunded",
            actor_user_id=int(admin.id),
            subject_type="order",
            subject_id=order.id,
            severity="WARN",
            metadata={"note": note, "amount": order.total_amount},
        )
    request_refund(order)
    return order


def request_refund(order: Order) -> dict:
    """Hand a committed refund decision to the payment processor.

    Cash orders carry no processor charge. When the refund queue is on
    the call is deferred to a worker, otherwise it runs inline and a
    failure is recorded for operators.
    """
    ref = order.payment_reference or ""
    if not ref or ref.startswith("cash:"):
        return {"ok": True, "skipped": True}

    if current_app.config.get("PAYMENT_REFUND_QUEUE"):
        from tianguis.tasks.payment_tasks import refund_order_payment_task

        refund_order_payment_task.delay(order_id=int(order.id))
        return {"ok": True, "queued": True}

    return execute_refund(order)


def execute_refund(order: Order) -> dict:
    amount_minor = money_major_to_minor(order.total_amount)
    try:
        provider = build_payments_provider(current_app.config)
        result = provider.refund(order.payment_reference, amount_minor=amount_minor)
    except (IntegrationTimeoutError, IntegrationRequestError, IntegrationMisconfiguredError) as e:
        logger.warning("refund_failed order_id=%s err=%s", order.id, e)
        log_event(
            "payment.refund_failed",
            subject_type="order",
            subject_id=order.id,
            severity="ERROR",
            metadata={"transaction_id": order.payment_reference, "error": str(e)},
        )
        db.session.commit()
        return {"ok": False, "error": str(e)}

    log_event(
        "payment.refund_requested",
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"refund:{int(order.id)}",
        metadata={"transaction_id": order.payment_reference, "amount_minor": amount_minor, "code": result.code},
    )
    db.session.commit()
    return {"ok": bool(result.ok), "code": result.code}
