from datetime import datetime

from partsmarket.extensions import db
from partsmarket.models.snapshots import TransactionMetadata


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # PAYMENT | PAYOUT | REFUND
    type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    fee = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(8), nullable=False, default="NGN")

    # PENDING | SUCCESSFUL | FAILED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    payment_method = db.Column(db.String(24), nullable=True)
    gateway_reference = db.Column(db.String(128), nullable=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=True, index=True)

    metadata_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def meta(self) -> TransactionMetadata:
        return TransactionMetadata.from_json(self.metadata_json)

    def set_meta(self, meta: TransactionMetadata) -> None:
        self.metadata_json = meta.to_json()

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "reference": self.reference,
            "type": self.type,
            "amount": float(self.amount or 0.0),
            "fee": float(self.fee or 0.0),
            "currency": self.currency or "NGN",
            "status": self.status,
            "payment_method": self.payment_method or "",
            "gateway_reference": self.gateway_reference or "",
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "customer_id": int(self.customer_id) if self.customer_id is not None else None,
            "vendor_id": int(self.vendor_id) if self.vendor_id is not None else None,
            "driver_id": int(self.driver_id) if self.driver_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Refund(db.Model):
    __tablename__ = "refunds"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    refund_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True)

    amount = db.Column(db.Float, nullable=False)
    reason = db.Column(db.Text, nullable=False, default="")

    # PENDING | APPROVED | PROCESSED | REJECTED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    gateway_reference = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "transaction_id": int(self.transaction_id),
            "refund_transaction_id": int(self.refund_transaction_id) if self.refund_transaction_id is not None else None,
            "amount": float(self.amount or 0.0),
            "reason": self.reason or "",
            "status": self.status,
            "requested_by_id": self.requested_by_id,
            "approved_by_id": self.approved_by_id,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "gateway_reference": self.gateway_reference or "",
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
