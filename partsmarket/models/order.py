from datetime import datetime

from partsmarket.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=True)

    order_type = db.Column(db.String(16), nullable=False, default="DELIVERY")

    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)
    tax = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)
    # Sum of non-rejected refunds; bounded by total.
    refunded_amount = db.Column(db.Float, nullable=False, default=0.0, server_default="0")

    # Locked at creation time; payment verification credits vendor_earning as-is.
    commission_rate = db.Column(db.Float, nullable=False, default=0.0)
    commission_amount = db.Column(db.Float, nullable=False, default=0.0)
    vendor_earning = db.Column(db.Float, nullable=False, default=0.0)

    payment_method = db.Column(db.String(24), nullable=False, default="CARD")
    payment_status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)
    payment_reference = db.Column(db.String(64), nullable=True, index=True)

    order_status = db.Column(db.String(24), nullable=False, default="RECEIVED", index=True)
    is_cancelled = db.Column(db.Boolean, nullable=False, default=False)
    cancellation_reason = db.Column(db.Text, nullable=True)

    promo_code = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship("OrderItem", backref="order", lazy=True, order_by="OrderItem.id")
    delivery = db.relationship("Delivery", backref="order", uselist=False, lazy=True)

    def to_dict(self, include_items: bool = True) -> dict:
        payload = {
            "id": int(self.id),
            "order_number": self.order_number,
            "customer_id": int(self.customer_id),
            "vendor_id": int(self.vendor_id),
            "address_id": int(self.address_id) if self.address_id is not None else None,
            "order_type": self.order_type,
            "subtotal": float(self.subtotal or 0.0),
            "delivery_fee": float(self.delivery_fee or 0.0),
            "tax": float(self.tax or 0.0),
            "discount": float(self.discount or 0.0),
            "total": float(self.total or 0.0),
            "refunded_amount": float(self.refunded_amount or 0.0),
            "commission_rate": float(self.commission_rate or 0.0),
            "commission_amount": float(self.commission_amount or 0.0),
            "vendor_earning": float(self.vendor_earning or 0.0),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference or "",
            "order_status": self.order_status,
            "is_cancelled": bool(self.is_cancelled),
            "cancellation_reason": self.cancellation_reason or "",
            "promo_code": self.promo_code or "",
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in (self.items or [])]
            payload["delivery"] = self.delivery.to_dict() if self.delivery is not None else None
        return payload


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    part_id = db.Column(db.Integer, db.ForeignKey("parts.id"), nullable=False, index=True)

    part_name = db.Column(db.String(200), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    subtotal = db.Column(db.Float, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "part_id": int(self.part_id),
            "part_name": self.part_name or "",
            "quantity": int(self.quantity),
            "unit_price": float(self.unit_price or 0.0),
            "subtotal": float(self.subtotal or 0.0),
            "notes": self.notes or "",
        }
