from datetime import datetime

from tianguis.extensions import db


CLABE_LENGTH = 18


class SellerBankProfile(db.Model):
    __tablename__ = "seller_bank_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)

    clabe = db.Column(db.String(CLABE_LENGTH), nullable=False)
    bank_name = db.Column(db.String(120), nullable=False)
    holder_name = db.Column(db.String(160), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_complete(self) -> bool:
        clabe = (self.clabe or "").strip()
        return (
            len(clabe) == CLABE_LENGTH
            and clabe.isdigit()
            and bool((self.bank_name or "").strip())
            and bool((self.holder_name or "").strip())
        )

    def to_dict(self, *, masked: bool = True):
        clabe = self.clabe or ""
        if masked and len(clabe) > 8:
            clabe = f"{clabe[:4]}...{clabe[-4:]}"
        return {
            "user_id": int(self.user_id),
            "clabe": clabe,
            "bank_name": self.bank_name or "",
            "holder_name": self.holder_name or "",
            "is_complete": self.is_complete(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
