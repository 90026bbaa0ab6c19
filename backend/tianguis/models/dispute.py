from datetime import datetime

from tianguis.extensions import db


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Equals order_id while open, NULL once resolved: at most one open dispute per order.
    open_order_id = db.Column(db.Integer, nullable=True, unique=True)

    raised_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    # not_received | not_as_described | damaged | other
    reason = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")

    # open | resolved_refund | resolved_release
    status = db.Column(db.String(24), nullable=False, default="open", index=True)

    resolution_note = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "raised_by": int(self.raised_by),
            "reason": self.reason or "",
            "description": self.description or "",
            "status": self.status or "",
            "resolution_note": self.resolution_note or None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
