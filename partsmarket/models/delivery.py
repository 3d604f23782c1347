from datetime import datetime

from partsmarket.extensions import db


class Delivery(db.Model):
    __tablename__ = "deliveries"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=True, index=True)

    status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)

    start_latitude = db.Column(db.Float, nullable=True)
    start_longitude = db.Column(db.Float, nullable=True)
    destination_latitude = db.Column(db.Float, nullable=True)
    destination_longitude = db.Column(db.Float, nullable=True)
    distance = db.Column(db.Float, nullable=True)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)
    # Net amount credited to the driver on completion; NULL until credited.
    driver_earning = db.Column(db.Float, nullable=True)

    estimated_delivery_time = db.Column(db.DateTime, nullable=True)
    pickup_time = db.Column(db.DateTime, nullable=True)
    delivered_time = db.Column(db.DateTime, nullable=True)
    driver_instructions = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "driver_id": int(self.driver_id) if self.driver_id is not None else None,
            "status": self.status,
            "distance": self.distance,
            "delivery_fee": float(self.delivery_fee or 0.0),
            "driver_earning": self.driver_earning,
            "estimated_delivery_time": self.estimated_delivery_time.isoformat() if self.estimated_delivery_time else None,
            "pickup_time": self.pickup_time.isoformat() if self.pickup_time else None,
            "delivered_time": self.delivered_time.isoformat() if self.delivered_time else None,
            "driver_instructions": self.driver_instructions or "",
        }
