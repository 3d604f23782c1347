from datetime import datetime

from partsmarket.extensions import db
from partsmarket.models.snapshots import load_json_object


class EventSeverity:
    INFO = "INFO"
    WARN = "WARN"
    # Ledger or settlement anomalies that need an operator.
    ALERT = "ALERT"

    ALL = {INFO, WARN, ALERT}


class PlatformEvent(db.Model):
    """Operational anomaly raised by the settlement services (drift, overdraw, failed sync)."""

    __tablename__ = "platform_events"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False, default=EventSeverity.INFO, index=True)

    # User that triggered the action, when there was one.
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    # e.g. ("order", "42"), ("vendor", "7"), ("payee_earnings", None)
    subject_type = db.Column(db.String(80), nullable=True, index=True)
    subject_id = db.Column(db.String(120), nullable=True, index=True)

    # X-Request-Id of the HTTP request or the trace id handed to a task.
    request_id = db.Column(db.String(80), nullable=True, index=True)
    # Same key twice means the same anomaly; the second write returns the first row.
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True, index=True)
    metadata_json = db.Column(db.Text, nullable=True)

    @property
    def is_alert(self) -> bool:
        return self.severity == EventSeverity.ALERT

    def metadata_dict(self) -> dict:
        return load_json_object(self.metadata_json)
