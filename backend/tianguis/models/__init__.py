from .user import User
from .listing import Listing
from .conversation import Conversation
from .negotiation import Negotiation, NegotiationOffer
from .order import Order, FUND_RELEASABLE_STATUSES
from .order_transition import OrderTransition
from .dispute import Dispute
from .payout import Payout, PayoutTransition
from .seller_bank_profile import SellerBankProfile, CLABE_LENGTH
from .webhook_event import WebhookEvent
from .idempotency_key import IdempotencyKey
from .audit_event import AuditEvent

__all__ = [
    "User",
    "Listing",
    "Conversation",
    "Negotiation",
    "NegotiationOffer",
    "Order",
    "FUND_RELEASABLE_STATUSES",
    "OrderTransition",
    "Dispute",
    "Payout",
    "PayoutTransition",
    "SellerBankProfile",
    "CLABE_LENGTH",
    "WebhookEvent",
    "IdempotencyKey",
    "AuditEvent",
]
