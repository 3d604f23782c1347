from __future__ import annotations

from datetime import datetime

from partsmarket.extensions import db


class PayeeAccountMixin:
    """Earnings ledger counters and bank details shared by vendors and drivers.

    ``total_earnings``, ``total_paid_out`` and ``reserved_payout`` are only ever moved with
    server-side increments (see ``services.ledger``).
    """

    total_earnings = db.Column(db.Float, nullable=False, default=0.0, server_default="0")
    total_paid_out = db.Column(db.Float, nullable=False, default=0.0, server_default="0")
    # Approved transfers still in flight with the gateway.
    reserved_payout = db.Column(db.Float, nullable=False, default=0.0, server_default="0")

    bank_name = db.Column(db.String(120), nullable=True)
    bank_account_name = db.Column(db.String(160), nullable=True)
    bank_account_number = db.Column(db.String(32), nullable=True)

    is_payout_enabled = db.Column(db.Boolean, nullable=False, default=True)
    last_payout_date = db.Column(db.DateTime, nullable=True)

    def unpaid_amount(self) -> float:
        return round(float(self.total_earnings or 0.0) - float(self.total_paid_out or 0.0), 2)

    def available_amount(self) -> float:
        """Unpaid earnings not already committed to an in-flight transfer."""
        return round(self.unpaid_amount() - float(self.reserved_payout or 0.0), 2)

    def has_bank_details(self) -> bool:
        return bool(
            (self.bank_name or "").strip()
            and (self.bank_account_name or "").strip()
            and (self.bank_account_number or "").strip()
        )

    def _earnings_dict(self) -> dict:
        return {
            "total_earnings": float(self.total_earnings or 0.0),
            "total_paid_out": float(self.total_paid_out or 0.0),
            "reserved_payout": float(self.reserved_payout or 0.0),
            "bank_name": self.bank_name or "",
            "bank_account_name": self.bank_account_name or "",
            "bank_account_number": self.bank_account_number or "",
            "is_payout_enabled": bool(self.is_payout_enabled),
            "last_payout_date": self.last_payout_date.isoformat() if self.last_payout_date else None,
        }


class Vendor(PayeeAccountMixin, db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    business_name = db.Column(db.String(160), nullable=False, default="")
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # Percent of the item subtotal retained by the platform. NULL means platform default.
    commission_rate = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        payload = {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "business_name": self.business_name or "",
            "email": self.email or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "commission_rate": self.commission_rate,
        }
        payload.update(self._earnings_dict())
        return payload


class Driver(PayeeAccountMixin, db.Model):
    __tablename__ = "drivers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    first_name = db.Column(db.String(80), nullable=False, default="")
    last_name = db.Column(db.String(80), nullable=False, default="")
    phone = db.Column(db.String(32), nullable=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        payload = {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "first_name": self.first_name or "",
            "last_name": self.last_name or "",
            "is_available": bool(self.is_available),
        }
        payload.update(self._earnings_dict())
        return payload
