from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from tianguis.errors import AuthorizationError, ConflictError, NotFoundError, PreconditionFailed, ValidationError
from tianguis.extensions import db
from tianguis.models import Conversation, Listing, Negotiation, NegotiationOffer
from tianguis.services.transitions import atomic_transition
from tianguis.utils.auth import is_arbitrator
from tianguis.utils.commission import to_decimal

logger = logging.getLogger(__name__)


class NegotiationStatus:
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    OPEN = {PENDING, COUNTERED}
    TERMINAL = {ACCEPTED, REJECTED}


_ACTION_ALIASES = {
    "accept": "accept",
    "accepted": "accept",
    "reject": "reject",
    "rejected": "reject",
    "counter": "counter",
    "countered": "counter",
}


def _parse_price(value, field: str = "price") -> Decimal:
    try:
        price = to_decimal(value)
    except ValueError:
        raise ValidationError(f"{field} must be a number", code="INVALID_PRICE")
    if price <= 0:
        raise ValidationError(f"{field} must be positive", code="INVALID_PRICE")
    return price


def _active_key(conversation_id: int, product_id: int) -> str:
    return f"{int(conversation_id)}:{int(product_id)}"


def _record_offer(negotiation: Negotiation, action: str, price, actor_id: int) -> NegotiationOffer:
    row = NegotiationOffer(
        negotiation_id=int(negotiation.id),
        action=action,
        price=price,
        actor_id=int(actor_id),
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row


def active_negotiation(conversation_id: int, product_id: int) -> Negotiation | None:
    return Negotiation.query.filter_by(active_key=_active_key(conversation_id, product_id)).first()


def propose_price(actor, *, conversation_id, product_id, proposed_price) -> Negotiation:
    """Open a price negotiation from the buyer's side of a conversation."""
    price = _parse_price(proposed_price, "proposed_price")
    try:
        conversation = db.session.get(Conversation, int(conversation_id))
        listing = db.session.get(Listing, int(product_id))
    except (TypeError, ValueError):
        raise ValidationError("conversation_id and product_id must be integers", code="INVALID_ID")
    if not conversation:
        raise NotFoundError("Conversation not found", code="CONVERSATION_NOT_FOUND")
    if not listing:
        raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")
    if not conversation.has_party(actor.id):
        raise AuthorizationError("Not a participant of this conversation", code="NOT_CONVERSATION_PARTY")
    if int(listing.seller_id) == int(actor.id):
        raise AuthorizationError("Cannot make an offer on your own product", code="CANNOT_OFFER_OWN_PRODUCT")
    if not conversation.is_active or int(conversation.listing_id) != int(listing.id):
        raise PreconditionFailed("No active conversation for this product", code="NO_ACTIVE_CONVERSATION")
    if (listing.status or "") != "active":
        raise PreconditionFailed("Product is no longer available", code="PRODUCT_NOT_AVAILABLE")
    if active_negotiation(conversation.id, listing.id):
        raise ConflictError("A negotiation is already active for this product", code="NEGOTIATION_ALREADY_ACTIVE")

    negotiation = Negotiation(
        conversation_id=int(conversation.id),
        product_id=int(listing.id),
        proposer_id=int(actor.id),
        responder_id=int(listing.seller_id),
        original_price=listing.price,
        proposed_price=price,
        currency=listing.currency or "MXN",
        status=NegotiationStatus.PENDING,
        active_key=_active_key(conversation.id, listing.id),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    with atomic_transition("Negotiation", integrity_code="NEGOTIATION_ALREADY_ACTIVE"):
        db.session.add(negotiation)
        db.session.flush()
        _record_offer(negotiation, "propose", price, actor.id)
    logger.info("negotiation_proposed id=%s product=%s price=%s", negotiation.id, listing.id, price)
    return negotiation


def _load_negotiation(negotiation_id) -> Negotiation:
    try:
        nid = int(negotiation_id)
    except (TypeError, ValueError):
        raise NotFoundError("Negotiation not found", code="NEGOTIATION_NOT_FOUND")
    negotiation = db.session.get(Negotiation, nid)
    if not negotiation:
        raise NotFoundError("Negotiation not found", code="NEGOTIATION_NOT_FOUND")
    return negotiation


def respond_to_negotiation(actor, negotiation_id, *, action: str, counter_price=None) -> Negotiation:
    """Accept, reject or counter an open negotiation.

    While pending only the seller answers. Once countered the buyer may
    accept or reject the counter, and the seller may revise it.
    """
    verb = _ACTION_ALIASES.get((action or "").strip().lower())
    if not verb:
        raise ValidationError("action must be accept, reject or counter", code="INVALID_ACTION")
    negotiation = _load_negotiation(negotiation_id)
    if negotiation.status in NegotiationStatus.TERMINAL:
        raise PreconditionFailed(f"Negotiation is already {negotiation.status}", code="NEGOTIATION_CLOSED")

    is_seller = int(actor.id) == int(negotiation.responder_id)
    is_buyer = int(actor.id) == int(negotiation.proposer_id)
    if negotiation.status == NegotiationStatus.PENDING:
        allowed = is_seller
    elif verb == "counter":
        allowed = is_seller
    else:
        allowed = is_buyer
    if not allowed:
        raise AuthorizationError("Not your turn to respond", code="NOT_COUNTERPARTY")

    price = _parse_price(counter_price, "counter_price") if verb == "counter" else None

    now = datetime.utcnow()
    with atomic_transition(f"Negotiation {negotiation.id}"):
        if verb == "counter":
            negotiation.counter_price = price
            negotiation.status = NegotiationStatus.COUNTERED
        elif verb == "accept":
            if negotiation.status == NegotiationStatus.COUNTERED:
                price = negotiation.counter_price
            else:
                price = negotiation.proposed_price
            negotiation.final_price = price
            negotiation.status = NegotiationStatus.ACCEPTED
            negotiation.active_key = None
        else:
            negotiation.status = NegotiationStatus.REJECTED
            negotiation.active_key = None
        negotiation.responded_at = now
        negotiation.updated_at = now
        db.session.add(negotiation)
        _record_offer(negotiation, verb, price, actor.id)
    logger.info("negotiation_%s id=%s by=%s price=%s", verb, negotiation.id, actor.id, price)
    return negotiation


def get_negotiation_for(actor, negotiation_id) -> Negotiation:
    negotiation = _load_negotiation(negotiation_id)
    if int(actor.id) not in (int(negotiation.proposer_id), int(negotiation.responder_id)) and not is_arbitrator(actor):
        raise AuthorizationError("Not a party to this negotiation", code="NOT_NEGOTIATION_PARTY")
    return negotiation


def negotiation_offers(negotiation: Negotiation) -> list[NegotiationOffer]:
    return (
        NegotiationOffer.query.filter_by(negotiation_id=int(negotiation.id))
        .order_by(NegotiationOffer.created_at.asc(), NegotiationOffer.id.asc())
        .all()
    )


def list_negotiations_for(actor, conversation_id) -> list[Negotiation]:
    try:
        conversation = db.session.get(Conversation, int(conversation_id))
    except (TypeError, ValueError):
        raise ValidationError("conversation_id must be an integer", code="INVALID_ID")
    if not conversation:
        raise NotFoundError("Conversation not found", code="CONVERSATION_NOT_FOUND")
    if not conversation.has_party(actor.id) and not is_arbitrator(actor):
        raise AuthorizationError("Not a participant of this conversation", code="NOT_CONVERSATION_PARTY")
    return (
        Negotiation.query.filter_by(conversation_id=int(conversation.id))
        .order_by(Negotiation.created_at.desc(), Negotiation.id.desc())
        .all()
    )
