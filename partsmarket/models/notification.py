from datetime import datetime
import json

from partsmarket.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # LOW_STOCK | ORDER | PAYMENT | PAYOUT
    kind = db.Column(db.String(32), nullable=False, default="ORDER")
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "kind": self.kind,
            "title": self.title or "",
            "message": self.message or "",
            "is_read": bool(self.is_read),
            "meta": self.meta_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
