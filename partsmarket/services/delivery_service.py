from __future__ import annotations

import logging
from datetime import datetime, timedelta

from partsmarket.models import Delivery, Transaction, TransactionMetadata
from partsmarket.services import ledger, pricing
from partsmarket.services.results import ErrorKind, ServiceResult
from partsmarket.utils.geo import estimate_delivery_minutes
from partsmarket.utils.references import generate_reference, unique_value

logger = logging.getLogger(__name__)


class DeliveryStatus:
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    PICKUP_IN_PROGRESS = "PICKUP_IN_PROGRESS"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    ARRIVED = "ARRIVED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    TERMINAL = {DELIVERED, FAILED, CANCELLED}
    ALLOWED = {
        PENDING: {ASSIGNED, CANCELLED},
        ASSIGNED: {PICKUP_IN_PROGRESS, CANCELLED},
        PICKUP_IN_PROGRESS: {PICKED_UP, FAILED},
        PICKED_UP: {IN_TRANSIT, FAILED},
        IN_TRANSIT: {ARRIVED, FAILED},
        ARRIVED: {DELIVERED, FAILED},
        DELIVERED: set(),
        FAILED: set(),
        CANCELLED: set(),
    }


def create_delivery_record(session, order, *, start=None, destination=None, distance: float | None = None, instructions: str | None = None) -> Delivery:
    """Adds the PENDING delivery for ``order`` to the caller's unit. Does not commit."""
    start_lat, start_lon = start or (None, None)
    dest_lat, dest_lon = destination or (None, None)
    row = Delivery(
        order_id=int(order.id),
        status=DeliveryStatus.PENDING,
        start_latitude=start_lat,
        start_longitude=start_lon,
        destination_latitude=dest_lat,
        destination_longitude=dest_lon,
        distance=distance,
        delivery_fee=float(order.delivery_fee or 0.0),
        estimated_delivery_time=datetime.utcnow() + timedelta(minutes=estimate_delivery_minutes(distance)),
        driver_instructions=(instructions or "").strip() or None,
    )
    session.add(row)
    return row


def _stamp(row: Delivery, status: str) -> None:
    row.status = status
    if status == DeliveryStatus.PICKED_UP and row.pickup_time is None:
        row.pickup_time = datetime.utcnow()
    if status == DeliveryStatus.DELIVERED and row.delivered_time is None:
        row.delivered_time = datetime.utcnow()


def credit_driver_earning(session, row: Delivery) -> float | None:
    """Credit the assigned driver's share of a DELIVERED delivery, once per delivery.

    Adds to the caller's unit and does not commit. Returns the net amount
    credited, or ``None`` when there is nothing to credit or it already was.
    """
    from partsmarket.services.payment_service import TransactionStatus, TransactionType

    if row.driver_id is None or row.status != DeliveryStatus.DELIVERED:
        return None
    _, charge, net = pricing.driver_delivery_earning(row.delivery_fee or 0.0)
    if net <= 0:
        return None
    claimed = ledger.compare_and_set(
        session,
        Delivery,
        row.id,
        field="driver_earning",
        expected=None,
        values={"driver_earning": net},
    )
    if not claimed:
        return None
    ledger.credit_earnings(session, user_type="DRIVER", user_id=row.driver_id, amount=net)
    txn = Transaction(
        reference=unique_value(lambda: generate_reference("DEL"), lambda value: _reference_taken(session, value)),
        type=TransactionType.EARNING,
        amount=net,
        fee=charge,
        status=TransactionStatus.SUCCESSFUL,
        payment_method="BANK_TRANSFER",
        driver_id=int(row.driver_id),
    )
    txn.set_meta(TransactionMetadata(delivery_id=int(row.id), user_type="DRIVER", driver_credit=net))
    session.add(txn)
    logger.info("driver_earning_credited delivery_id=%s driver_id=%s net=%s", row.id, row.driver_id, net)
    return net


def _reference_taken(session, value: str) -> bool:
    return session.query(Transaction.id).filter(Transaction.reference == value).first() is not None


def update_delivery_status(session, delivery_id: int, status: str) -> ServiceResult:
    """Driver-facing transition; follows the courier workflow table strictly."""
    target = (status or "").strip().upper()
    if target not in DeliveryStatus.ALLOWED:
        return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown delivery status {status}")
    row = session.get(Delivery, int(delivery_id))
    if row is None:
        return ServiceResult.failure(ErrorKind.NOT_FOUND, "Delivery not found")
    if target not in DeliveryStatus.ALLOWED.get(row.status, set()):
        return ServiceResult.failure(ErrorKind.CONFLICT, f"Cannot transition delivery from {row.status} to {target}")
    try:
        _stamp(row, target)
        credited = credit_driver_earning(session, row)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("delivery_status_update_failed delivery_id=%s target=%s", delivery_id, target)
        return ServiceResult.internal()
    return ServiceResult(ok=True, value=row, details={"driver_earning": credited})


def sync_delivery_status(session, delivery_id: int, status: str) -> ServiceResult:
    """Mirror an order-level status onto its delivery.

    The order drives this, so intermediate courier steps may be skipped. A
    delivery that already reached a terminal state is never moved elsewhere.
    """
    row = session.get(Delivery, int(delivery_id))
    if row is None:
        return ServiceResult.failure(ErrorKind.NOT_FOUND, "Delivery not found")
    if row.status == status:
        return ServiceResult.success(row)
    if row.status in DeliveryStatus.TERMINAL:
        return ServiceResult.failure(ErrorKind.CONFLICT, f"Delivery already {row.status}")
    _stamp(row, status)
    credit_driver_earning(session, row)
    session.commit()
    return ServiceResult.success(row)
