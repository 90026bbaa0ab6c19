from datetime import datetime

from tianguis.extensions import db


class User(db.Model):
    """Local projection of an externally authenticated identity."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    # user (buyer/seller), admin (operator), arbitrator (dispute resolution only)
    role = db.Column(db.String(32), nullable=False, default="user")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role or "user",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
