from datetime import datetime

from tianguis.extensions import db


FUND_RELEASABLE_STATUSES = ("completed", "resolved_release")


class Order(db.Model):
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("buyer_id <> seller_id", name="ck_orders_distinct_parties"),
        db.CheckConstraint("total_amount > 0", name="ck_orders_total_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    negotiation_id = db.Column(db.Integer, db.ForeignKey("negotiations.id"), nullable=True)

    product_amount = db.Column(db.Numeric(12, 2), nullable=False)
    shipping_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="MXN")

    # meetup | shipping
    order_type = db.Column(db.String(16), nullable=False)
    # online | cash
    payment_method = db.Column(db.String(16), nullable=False)

    status = db.Column(db.String(32), nullable=False, default="pending_payment", index=True)

    # Processor transaction id; dedupes repeated payment confirmations.
    payment_reference = db.Column(db.String(128), nullable=True, unique=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    shipping_address = db.Column(db.Text, nullable=True)
    shipping_carrier = db.Column(db.String(64), nullable=True)
    tracking_number = db.Column(db.String(128), nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    meetup_location = db.Column(db.String(255), nullable=True)
    meetup_time = db.Column(db.DateTime, nullable=True)
    meetup_lat = db.Column(db.Float, nullable=True)
    meetup_lng = db.Column(db.Float, nullable=True)

    # unconfirmed | buyer_confirmed | seller_confirmed | confirmed
    confirmation_state = db.Column(db.String(24), nullable=False, default="unconfirmed")
    buyer_confirmed_at = db.Column(db.DateTime, nullable=True)
    seller_confirmed_at = db.Column(db.DateTime, nullable=True)

    disputed_from = db.Column(db.String(32), nullable=True)

    # Read-model projection of Payout.status; written only by the payout ledger.
    payout_status = db.Column(db.String(16), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def party_role(self, user_id: int | None) -> str | None:
        if user_id is None:
            return None
        if int(user_id) == int(self.buyer_id):
            return "buyer"
        if int(user_id) == int(self.seller_id):
            return "seller"
        return None

    @property
    def display_status(self) -> str:
        status = self.status or ""
        if status in FUND_RELEASABLE_STATUSES and (self.payout_status or "") != "completed":
            return "completed_pending_payout"
        return status

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "product_id": int(self.product_id),
            "negotiation_id": int(self.negotiation_id) if self.negotiation_id is not None else None,
            "product_amount": str(self.product_amount) if self.product_amount is not None else None,
            "shipping_fee": str(self.shipping_fee) if self.shipping_fee is not None else "0.00",
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "currency": self.currency or "",
            "order_type": self.order_type or "",
            "payment_method": self.payment_method or "",
            "status": self.status or "",
            "display_status": self.display_status,
            "payment_reference": self.payment_reference or None,
            "paid_at": _iso(self.paid_at),
            "expires_at": _iso(self.expires_at),
            "shipping_address": self.shipping_address or None,
            "shipping_carrier": self.shipping_carrier or None,
            "tracking_number": self.tracking_number or None,
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "meetup_location": self.meetup_location or None,
            "meetup_time": _iso(self.meetup_time),
            "meetup_lat": self.meetup_lat,
            "meetup_lng": self.meetup_lng,
            "confirmation_state": self.confirmation_state or "unconfirmed",
            "buyer_confirmed_at": _iso(self.buyer_confirmed_at),
            "seller_confirmed_at": _iso(self.seller_confirmed_at),
            "payout_status": self.payout_status or None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "refunded_at": _iso(self.refunded_at),
        }
