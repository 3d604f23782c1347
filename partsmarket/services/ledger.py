"""Atomic counter primitives for stock and earnings.

Every function issues a single UPDATE whose WHERE clause carries the guard, so
the check and the write cannot interleave with another request. None of them
commit: they join whatever unit of work the caller's session has open.
"""
from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.orm.util import identity_key

from partsmarket.models import Driver, Order, Part, Vendor

PAYEE_MODELS = {"VENDOR": Vendor, "DRIVER": Driver}
# Float columns; absorbs representation error when a payout drains the balance exactly.
BALANCE_TOLERANCE = 0.005


def _execute(session, stmt) -> int:
    result = session.execute(stmt.execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


def _expire_cached(session, model, row_id: int, *attrs: str) -> None:
    obj = session.identity_map.get(identity_key(model, int(row_id)))
    if obj is not None:
        session.expire(obj, list(attrs) or None)


def decrement_stock(session, *, part_id: int, vendor_id: int, quantity: int) -> bool:
    """Take ``quantity`` units if the part is active, owned by the vendor and has enough stock."""
    if int(quantity) <= 0:
        raise ValueError("quantity must be positive")
    stmt = (
        update(Part)
        .where(
            Part.id == int(part_id),
            Part.vendor_id == int(vendor_id),
            Part.is_active.is_(True),
            Part.stock_quantity >= int(quantity),
        )
        .values(stock_quantity=Part.stock_quantity - int(quantity))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, Part, part_id, "stock_quantity")
    return changed == 1


def increment_stock(session, *, part_id: int, quantity: int) -> bool:
    if int(quantity) <= 0:
        raise ValueError("quantity must be positive")
    stmt = (
        update(Part)
        .where(Part.id == int(part_id))
        .values(stock_quantity=Part.stock_quantity + int(quantity))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, Part, part_id, "stock_quantity")
    return changed == 1


def credit_earnings(session, *, user_type: str, user_id: int, amount: float) -> bool:
    model = PAYEE_MODELS[user_type]
    if float(amount) < 0:
        raise ValueError("amount must not be negative")
    stmt = (
        update(model)
        .where(model.id == int(user_id))
        .values(total_earnings=model.total_earnings + float(amount))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, model, user_id, "total_earnings")
    return changed == 1


def reserve_payout(session, *, user_type: str, user_id: int, amount: float) -> bool:
    """Hold ``amount`` for an approved transfer if it fits in the unreserved unpaid balance."""
    model = PAYEE_MODELS[user_type]
    if float(amount) <= 0:
        raise ValueError("amount must be positive")
    stmt = (
        update(model)
        .where(
            model.id == int(user_id),
            model.total_earnings - model.total_paid_out - model.reserved_payout >= float(amount) - BALANCE_TOLERANCE,
        )
        .values(reserved_payout=model.reserved_payout + float(amount))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, model, user_id, "reserved_payout")
    return changed == 1


def release_payout(session, *, user_type: str, user_id: int, amount: float) -> bool:
    model = PAYEE_MODELS[user_type]
    stmt = (
        update(model)
        .where(
            model.id == int(user_id),
            model.reserved_payout >= float(amount) - BALANCE_TOLERANCE,
        )
        .values(reserved_payout=model.reserved_payout - float(amount))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, model, user_id, "reserved_payout")
    return changed == 1


def record_payout(
    session,
    *,
    user_type: str,
    user_id: int,
    amount: float,
    paid_at=None,
    from_reserved: bool = False,
) -> bool:
    """Move ``amount`` into ``total_paid_out`` only while it stays covered by earnings.

    With ``from_reserved`` the same amount is taken out of ``reserved_payout``
    in the same statement, and the update is refused if it was never held.
    """
    model = PAYEE_MODELS[user_type]
    if float(amount) <= 0:
        raise ValueError("amount must be positive")
    values = {"total_paid_out": model.total_paid_out + float(amount)}
    guards = [
        model.id == int(user_id),
        model.total_earnings - model.total_paid_out >= float(amount) - BALANCE_TOLERANCE,
    ]
    if from_reserved:
        values["reserved_payout"] = model.reserved_payout - float(amount)
        guards.append(model.reserved_payout >= float(amount) - BALANCE_TOLERANCE)
    if paid_at is not None:
        values["last_payout_date"] = paid_at
    changed = _execute(session, update(model).where(*guards).values(**values))
    if changed:
        _expire_cached(session, model, user_id, *values.keys())
    return changed == 1


def compare_and_set(session, model, row_id: int, *, field: str, expected: str, values: dict) -> bool:
    """Flip a status-like column only when it still holds ``expected``."""
    column = getattr(model, field)
    stmt = (
        update(model)
        .where(model.id == int(row_id), column == expected)
        .values(**values)
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, model, row_id, *values.keys())
    return changed == 1


def reserve_refund(session, *, order_id: int, amount: float) -> bool:
    """Count ``amount`` against the order's refundable balance if it still fits under ``total``."""
    if float(amount) <= 0:
        raise ValueError("amount must be positive")
    stmt = (
        update(Order)
        .where(
            Order.id == int(order_id),
            Order.total - Order.refunded_amount >= float(amount) - BALANCE_TOLERANCE,
        )
        .values(refunded_amount=Order.refunded_amount + float(amount))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, Order, order_id, "refunded_amount")
    return changed == 1


def release_refund(session, *, order_id: int, amount: float) -> bool:
    stmt = (
        update(Order)
        .where(
            Order.id == int(order_id),
            Order.refunded_amount >= float(amount) - BALANCE_TOLERANCE,
        )
        .values(refunded_amount=Order.refunded_amount - float(amount))
    )
    changed = _execute(session, stmt)
    if changed:
        _expire_cached(session, Order, order_id, "refunded_amount")
    return changed == 1
