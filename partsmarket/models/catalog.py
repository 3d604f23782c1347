from datetime import datetime

from partsmarket.extensions import db


class Part(db.Model):
    __tablename__ = "parts"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    name = db.Column(db.String(200), nullable=False)
    sku = db.Column(db.String(64), nullable=True, index=True)
    price = db.Column(db.Float, nullable=False, default=0.0)
    discounted_price = db.Column(db.Float, nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    low_stock_alert = db.Column(db.Integer, nullable=False, default=5, server_default="5")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_parts_stock_non_negative"),
    )

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "vendor_id": int(self.vendor_id),
            "name": self.name or "",
            "sku": self.sku or "",
            "price": float(self.price or 0.0),
            "discounted_price": float(self.discounted_price) if self.discounted_price is not None else None,
            "stock_quantity": int(self.stock_quantity or 0),
            "low_stock_alert": int(self.low_stock_alert or 0),
            "is_active": bool(self.is_active),
        }


class Promotion(db.Model):
    __tablename__ = "promotions"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    name = db.Column(db.String(160), nullable=False, default="")
    promotion_code = db.Column(db.String(64), nullable=False, index=True)
    discount_value = db.Column(db.Float, nullable=False, default=0.0)
    is_percentage = db.Column(db.Boolean, nullable=False, default=True)
    minimum_order_value = db.Column(db.Float, nullable=True)

    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("vendor_id", "promotion_code", name="uq_promotions_vendor_code"),
    )

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "vendor_id": int(self.vendor_id),
            "name": self.name or "",
            "promotion_code": self.promotion_code or "",
            "discount_value": float(self.discount_value or 0.0),
            "is_percentage": bool(self.is_percentage),
            "minimum_order_value": self.minimum_order_value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "is_active": bool(self.is_active),
        }
