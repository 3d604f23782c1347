from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from partsmarket.models import Driver, Order, PayoutRequest, Refund, Transaction, Vendor
from partsmarket.services.payment_service import RefundStatus, TransactionStatus, TransactionType
from partsmarket.services.payout_service import PayoutStatus


def _drift(stored: float, computed: float) -> float:
    return round(float(stored or 0.0) - float(computed or 0.0), 4)


def _payout_totals(session, column) -> dict[int, float]:
    rows = (
        session.query(column, func.coalesce(func.sum(Transaction.amount), 0.0))
        .filter(
            Transaction.type == TransactionType.PAYOUT,
            Transaction.status == TransactionStatus.SUCCESSFUL,
            column.isnot(None),
        )
        .group_by(column)
        .all()
    )
    return {int(pid): float(total or 0.0) for pid, total in rows}


def _recorded_credits(session, txn_type: str, column, credit_of) -> dict[int, float]:
    credits: dict[int, float] = {}
    rows = (
        session.query(Transaction)
        .filter(
            Transaction.type == txn_type,
            Transaction.status == TransactionStatus.SUCCESSFUL,
            column.isnot(None),
        )
        .all()
    )
    for txn in rows:
        credit = credit_of(txn.meta())
        if credit:
            payee_id = int(getattr(txn, column.key))
            credits[payee_id] = credits.get(payee_id, 0.0) + float(credit)
    return credits


def _reserved_totals(session, user_type: str) -> dict[int, float]:
    rows = (
        session.query(PayoutRequest.user_id, func.coalesce(func.sum(PayoutRequest.amount), 0.0))
        .filter(PayoutRequest.user_type == user_type, PayoutRequest.status == PayoutStatus.APPROVED)
        .group_by(PayoutRequest.user_id)
        .all()
    )
    return {int(pid): float(total or 0.0) for pid, total in rows}


def _check_payees(payees, user_type: str, earned: dict, paid: dict, reserved: dict, tolerance: float) -> list[dict]:
    items = []
    for payee in payees:
        pid = int(payee.id)
        earnings_drift = _drift(payee.total_earnings, earned.get(pid, 0.0))
        paid_drift = _drift(payee.total_paid_out, paid.get(pid, 0.0))
        reserved_drift = _drift(payee.reserved_payout, reserved.get(pid, 0.0))
        committed = float(payee.total_paid_out or 0.0) + float(payee.reserved_payout or 0.0)
        overdrawn = committed - float(payee.total_earnings or 0.0) > tolerance
        if max(abs(earnings_drift), abs(paid_drift), abs(reserved_drift)) > tolerance or overdrawn:
            items.append(
                {
                    "user_type": user_type,
                    "user_id": pid,
                    "stored_earnings": float(payee.total_earnings or 0.0),
                    "computed_earnings": round(earned.get(pid, 0.0), 4),
                    "stored_paid_out": float(payee.total_paid_out or 0.0),
                    "computed_paid_out": round(paid.get(pid, 0.0), 4),
                    "stored_reserved": float(payee.reserved_payout or 0.0),
                    "computed_reserved": round(reserved.get(pid, 0.0), 4),
                    "earnings_drift": earnings_drift,
                    "paid_out_drift": paid_drift,
                    "reserved_drift": reserved_drift,
                    "overdrawn": overdrawn,
                }
            )
    return items


def recompute_payee_balances(session, *, tolerance: float = 0.01) -> dict:
    """Compare stored earnings counters against what the transaction history implies.

    Vendor earnings are the credits recorded on SUCCESSFUL payment
    transactions at verification time, driver earnings the credits recorded on
    delivery EARNING transactions. Paid-out totals are the sum of SUCCESSFUL
    payout transactions and the reserved amount is the sum of APPROVED
    requests whose transfer has not settled yet.
    """
    vendor_earned = _recorded_credits(session, TransactionType.PAYMENT, Transaction.vendor_id, lambda m: m.vendor_credit)
    driver_earned = _recorded_credits(session, TransactionType.EARNING, Transaction.driver_id, lambda m: m.driver_credit)

    vendors = session.query(Vendor).order_by(Vendor.id.asc()).all()
    drivers = session.query(Driver).order_by(Driver.id.asc()).all()
    drift_items = _check_payees(
        vendors,
        "VENDOR",
        vendor_earned,
        _payout_totals(session, Transaction.vendor_id),
        _reserved_totals(session, "VENDOR"),
        tolerance,
    )
    drift_items += _check_payees(
        drivers,
        "DRIVER",
        driver_earned,
        _payout_totals(session, Transaction.driver_id),
        _reserved_totals(session, "DRIVER"),
        tolerance,
    )

    return {
        "ok": True,
        "scope": "payee_earnings",
        "vendor_count": len(vendors),
        "driver_count": len(drivers),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def recompute_refund_counters(session, *, tolerance: float = 0.01) -> dict:
    """Check ``Order.refunded_amount`` against the non-rejected refund rows."""
    sums = dict(
        session.query(Refund.order_id, func.coalesce(func.sum(Refund.amount), 0.0))
        .filter(Refund.status != RefundStatus.REJECTED)
        .group_by(Refund.order_id)
        .all()
    )
    drift_items = []
    orders = session.query(Order).filter((Order.refunded_amount > 0) | Order.id.in_(list(sums.keys()) or [-1])).all()
    for order in orders:
        computed = float(sums.get(order.id, 0.0) or 0.0)
        drift = _drift(order.refunded_amount, computed)
        over_total = computed - float(order.total or 0.0) > tolerance
        if abs(drift) > tolerance or over_total:
            drift_items.append(
                {
                    "order_id": int(order.id),
                    "order_number": order.order_number,
                    "stored_refunded": float(order.refunded_amount or 0.0),
                    "computed_refunded": round(computed, 4),
                    "total": float(order.total or 0.0),
                    "drift": drift,
                    "over_total": over_total,
                }
            )
    return {
        "ok": True,
        "scope": "order_refunds",
        "order_count": len(orders),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }
