from datetime import datetime
import json

from partsmarket.extensions import db


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False, index=True)
    performed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    details_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def details(self) -> dict:
        raw = self.details_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            pass
        return {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "performed_by": int(self.performed_by) if self.performed_by is not None else None,
            "details": self.details(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
