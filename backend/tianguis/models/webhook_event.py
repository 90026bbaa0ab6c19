from datetime import datetime

from tianguis.extensions import db


class WebhookEvent(db.Model):
    """Processor webhook receipt; event_id uniqueness makes redelivery a no-op."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="stripe")
    event_id = db.Column(db.String(128), nullable=False)
    event_type = db.Column(db.String(64), nullable=False, default="")
    transaction_id = db.Column(db.String(128), nullable=True, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    # received | processed | ignored | failed | retry
    status = db.Column(db.String(16), nullable=False, default="received")
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type or "",
            "transaction_id": self.transaction_id or "",
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "status": self.status or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
