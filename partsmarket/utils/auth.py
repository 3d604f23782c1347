from __future__ import annotations

from flask import g

from partsmarket.extensions import db
from partsmarket.models import Customer, Driver, User, Vendor
from partsmarket.utils.responses import json_error


def current_user() -> User | None:
    uid = getattr(g, "auth_user_id", None)
    if uid is None:
        return None
    user = db.session.get(User, int(uid))
    if user is None or not bool(user.is_active):
        return None
    return user


def is_admin(user: User | None) -> bool:
    if not user:
        return False
    return (getattr(user, "role", None) or "").strip().lower() == "admin"


def customer_for(user: User | None) -> Customer | None:
    if not user:
        return None
    return Customer.query.filter_by(user_id=int(user.id)).first()


def vendor_for(user: User | None) -> Vendor | None:
    if not user:
        return None
    return Vendor.query.filter_by(user_id=int(user.id)).first()


def driver_for(user: User | None) -> Driver | None:
    if not user:
        return None
    return Driver.query.filter_by(user_id=int(user.id)).first()


def unauthorized():
    return json_error("UNAUTHORIZED", "Authentication required", 401)


def forbidden(message: str = "Forbidden"):
    return json_error("FORBIDDEN", message, 403)
