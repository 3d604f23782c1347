from datetime import datetime

from partsmarket.extensions import db
from partsmarket.models.snapshots import BankSnapshot, RequestedEarnings

OUTSTANDING_PAYOUT_WHERE = "status IN ('PENDING', 'APPROVED')"


class PayoutRequest(db.Model):
    __tablename__ = "payout_requests"
    __table_args__ = (
        # At most one PENDING or APPROVED request per payee.
        db.Index(
            "uq_payout_requests_outstanding",
            "user_type",
            "user_id",
            unique=True,
            sqlite_where=db.text(OUTSTANDING_PAYOUT_WHERE),
            postgresql_where=db.text(OUTSTANDING_PAYOUT_WHERE),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Vendor.id or Driver.id depending on user_type.
    user_id = db.Column(db.Integer, nullable=False, index=True)
    user_type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)

    # PENDING | APPROVED | PROCESSED | REJECTED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    bank_details_json = db.Column(db.Text, nullable=True)
    requested_earnings_json = db.Column(db.Text, nullable=True)

    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def bank_details(self) -> BankSnapshot:
        return BankSnapshot.from_json(self.bank_details_json)

    def requested_earnings(self) -> RequestedEarnings:
        return RequestedEarnings.from_json(self.requested_earnings_json)

    def to_dict(self) -> dict:
        bank = self.bank_details()
        earnings = self.requested_earnings()
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "user_type": self.user_type,
            "amount": float(self.amount or 0.0),
            "status": self.status,
            "bank_name": bank.bank_name,
            "bank_account_name": bank.bank_account_name,
            "bank_account_number": bank.bank_account_number,
            "requested_earnings": {
                "total_earnings": earnings.total_earnings,
                "total_paid_out": earnings.total_paid_out,
                "unpaid_amount": earnings.unpaid_amount,
                "requested_amount": earnings.requested_amount,
            },
            "processed_by_id": self.processed_by_id,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "notes": self.notes or "",
            "transaction_id": int(self.transaction_id) if self.transaction_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
