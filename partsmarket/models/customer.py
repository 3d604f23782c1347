from datetime import datetime

from partsmarket.extensions import db


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    first_name = db.Column(db.String(80), nullable=False, default="")
    last_name = db.Column(db.String(80), nullable=False, default="")
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    addresses = db.relationship("Address", backref="customer", lazy=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "first_name": self.first_name or "",
            "last_name": self.last_name or "",
            "email": self.email or "",
            "phone": self.phone or "",
        }


class Address(db.Model):
    __tablename__ = "addresses"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    street = db.Column(db.String(255), nullable=False, default="")
    city = db.Column(db.String(80), nullable=False, default="")
    state = db.Column(db.String(80), nullable=False, default="")
    additional_info = db.Column(db.Text, nullable=True)

    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "customer_id": int(self.customer_id),
            "street": self.street or "",
            "city": self.city or "",
            "state": self.state or "",
            "additional_info": self.additional_info or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
        }
