from datetime import datetime

from tianguis.extensions import db


class Negotiation(db.Model):
    __tablename__ = "negotiations"

    id = db.Column(db.Integer, primary_key=True)

    conversation_id = db.Column(db.Integer, db.ForeignKey("conversations.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    proposer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    responder_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    original_price = db.Column(db.Numeric(12, 2), nullable=False)
    proposed_price = db.Column(db.Numeric(12, 2), nullable=False)
    counter_price = db.Column(db.Numeric(12, 2), nullable=True)
    final_price = db.Column(db.Numeric(12, 2), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="MXN")

    # pending | countered | accepted | rejected
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # "<conversation_id>:<product_id>" while pending/countered, NULL once terminal.
    active_key = db.Column(db.String(64), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    responded_at = db.Column(db.DateTime, nullable=True)

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self):
        def _money(value):
            return str(value) if value is not None else None

        return {
            "id": int(self.id),
            "conversation_id": int(self.conversation_id),
            "product_id": int(self.product_id),
            "proposer_id": int(self.proposer_id),
            "responder_id": int(self.responder_id),
            "original_price": _money(self.original_price),
            "proposed_price": _money(self.proposed_price),
            "counter_price": _money(self.counter_price),
            "final_price": _money(self.final_price),
            "currency": self.currency or "",
            "status": self.status or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
        }


class NegotiationOffer(db.Model):
    """Append-only log of every offer event on a negotiation."""

    __tablename__ = "negotiation_offers"

    id = db.Column(db.Integer, primary_key=True)
    negotiation_id = db.Column(db.Integer, db.ForeignKey("negotiations.id"), nullable=False, index=True)
    # propose | counter | accept | reject
    action = db.Column(db.String(16), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "negotiation_id": int(self.negotiation_id),
            "action": self.action or "",
            "price": str(self.price) if self.price is not None else None,
            "actor_id": int(self.actor_id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
