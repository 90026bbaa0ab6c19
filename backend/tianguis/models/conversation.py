from datetime import datetime

from tianguis.extensions import db


class Conversation(db.Model):
    """Chat thread between a prospective buyer and the listing's seller.

    Message transport lives elsewhere; only the parties are needed here.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        db.UniqueConstraint("listing_id", "buyer_id", name="uq_conversation_listing_buyer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def has_party(self, user_id: int | None) -> bool:
        if user_id is None:
            return False
        return int(user_id) in (int(self.buyer_id), int(self.seller_id))

    def to_dict(self):
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
