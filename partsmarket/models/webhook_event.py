from datetime import datetime

from partsmarket.extensions import db


class WebhookEvent(db.Model):
    """Delivery log for inbound gateway callbacks.

    One row per distinct (provider, event_id). Processing idempotency lives on
    the Transaction row, this table only records what arrived and what we did.
    """

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="flutterwave")
    event_id = db.Column(db.String(128), nullable=False)
    event_type = db.Column(db.String(64), nullable=False, default="")
    reference = db.Column(db.String(128), nullable=True, index=True)
    # received | processed | ignored | failed
    status = db.Column(db.String(32), nullable=False, default="received")
    delivery_count = db.Column(db.Integer, nullable=False, default=1)
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type or "",
            "reference": self.reference or "",
            "status": self.status or "",
            "delivery_count": int(self.delivery_count or 0),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
