from __future__ import annotations

import logging
from datetime import datetime

from partsmarket.models import Delivery, Order
from partsmarket.services import ledger
from partsmarket.services.delivery_service import DeliveryStatus, sync_delivery_status
from partsmarket.services.results import ErrorKind, ServiceResult, UnitAborted
from partsmarket.utils.audit import log_action
from partsmarket.utils.events import log_event

logger = logging.getLogger(__name__)


class OrderType:
    DELIVERY = "DELIVERY"
    COLLECTION = "COLLECTION"

    ALL = {DELIVERY, COLLECTION}


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class OrderStatus:
    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    COLLECTED = "COLLECTED"
    CANCELLED = "CANCELLED"

    ALL = {RECEIVED, PROCESSING, READY_FOR_PICKUP, IN_TRANSIT, DELIVERED, COLLECTED, CANCELLED}
    TERMINAL = {DELIVERED, COLLECTED, CANCELLED}
    CANCELLABLE = {RECEIVED, PROCESSING}

    # CANCELLED is only reachable through cancel_order.
    ALLOWED = {
        OrderType.DELIVERY: {
            RECEIVED: {PROCESSING},
            PROCESSING: {READY_FOR_PICKUP},
            READY_FOR_PICKUP: {IN_TRANSIT},
            IN_TRANSIT: {DELIVERED},
        },
        OrderType.COLLECTION: {
            RECEIVED: {PROCESSING},
            PROCESSING: {READY_FOR_PICKUP},
            READY_FOR_PICKUP: {COLLECTED},
        },
    }

    DELIVERY_SYNC = {
        READY_FOR_PICKUP: DeliveryStatus.PENDING,
        IN_TRANSIT: DeliveryStatus.IN_TRANSIT,
        DELIVERED: DeliveryStatus.DELIVERED,
        CANCELLED: DeliveryStatus.CANCELLED,
    }

    @classmethod
    def allowed_next(cls, order_type: str, current: str) -> set:
        return cls.ALLOWED.get(order_type, {}).get(current, set())


def append_note(existing: str | None, line: str, *, at: datetime | None = None) -> str:
    stamped = f"{(at or datetime.utcnow()).isoformat()}: {line}"
    if not existing:
        return stamped
    return f"{existing}\n{stamped}"


class OrderStateMachine:
    def __init__(self, session):
        self.session = session

    def update_status(self, order_id: int, status: str, *, notes: str | None = None, actor_id: int | None = None) -> ServiceResult:
        target = (status or "").strip().upper()
        if target not in OrderStatus.ALL:
            return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown order status {status}")
        if target == OrderStatus.CANCELLED:
            return ServiceResult.failure(ErrorKind.VALIDATION, "Use the cancel operation to cancel an order")

        order = self.session.get(Order, int(order_id))
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Order not found")
        current = order.order_status
        if target not in OrderStatus.allowed_next(order.order_type, current):
            return ServiceResult.failure(
                ErrorKind.CONFLICT,
                f"Cannot move a {order.order_type} order from {current} to {target}",
                current_status=current,
            )

        line = f"Status changed from {current} to {target}"
        extra = (notes or "").strip()
        if extra:
            line = f"{line}. {extra}"
        try:
            moved = ledger.compare_and_set(
                self.session,
                Order,
                order.id,
                field="order_status",
                expected=current,
                values={"order_status": target, "notes": append_note(order.notes, line)},
            )
            if not moved:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Order status changed by another request"))
            log_action(
                self.session,
                "ORDER_STATUS_UPDATED",
                "ORDER",
                order.id,
                performed_by=actor_id,
                details={"from": current, "to": target},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("order_status_update_failed order_id=%s to=%s", order_id, target)
            return ServiceResult.internal()

        logger.info("order_status_changed order_id=%s from=%s to=%s", order_id, current, target)
        sync_state = self._sync_delivery(int(order_id), target, actor_id=actor_id)
        return ServiceResult(ok=True, value=order, details={"delivery_sync": sync_state})

    def cancel_order(self, order_id: int, reason: str, *, cancelled_by: int | None = None) -> ServiceResult:
        reason = (reason or "").strip()
        if not reason:
            return ServiceResult.failure(ErrorKind.VALIDATION, "A cancellation reason is required")
        order = self.session.get(Order, int(order_id))
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Order not found")
        current = order.order_status
        if current not in OrderStatus.CANCELLABLE:
            return ServiceResult.failure(
                ErrorKind.CONFLICT,
                f"Order cannot be cancelled once it is {current}",
                current_status=current,
            )

        try:
            moved = ledger.compare_and_set(
                self.session,
                Order,
                order.id,
                field="order_status",
                expected=current,
                values={
                    "order_status": OrderStatus.CANCELLED,
                    "is_cancelled": True,
                    "cancellation_reason": reason,
                    "notes": append_note(order.notes, f"Order cancelled. Reason: {reason}"),
                },
            )
            if not moved:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Order status changed by another request"))
            restored = []
            for item in order.items:
                ledger.increment_stock(self.session, part_id=item.part_id, quantity=item.quantity)
                restored.append({"part_id": int(item.part_id), "quantity": int(item.quantity)})
            log_action(
                self.session,
                "ORDER_CANCELLED",
                "ORDER",
                order.id,
                performed_by=cancelled_by,
                details={"from": current, "reason": reason, "restored": restored},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("order_cancel_failed order_id=%s", order_id)
            return ServiceResult.internal()

        logger.info("order_cancelled order_id=%s from=%s", order_id, current)
        sync_state = self._sync_delivery(int(order_id), OrderStatus.CANCELLED, actor_id=cancelled_by)
        return ServiceResult(ok=True, value=order, details={"delivery_sync": sync_state})

    def _sync_delivery(self, order_id: int, order_status: str, *, actor_id: int | None = None) -> str:
        """Best-effort mirror onto the delivery row; the order change is already committed."""
        target = OrderStatus.DELIVERY_SYNC.get(order_status)
        if target is None:
            return "skipped"
        delivery = self.session.query(Delivery).filter(Delivery.order_id == int(order_id)).first()
        if delivery is None:
            return "skipped"
        delivery_id = int(delivery.id)
        error = ""
        try:
            result = sync_delivery_status(self.session, delivery_id, target)
            if result.ok:
                return "ok"
            error = result.message
        except Exception as e:
            self.session.rollback()
            error = type(e).__name__
        logger.error(
            "delivery_status_sync_failed order_id=%s delivery_id=%s target=%s err=%s",
            order_id,
            delivery_id,
            target,
            error,
        )
        log_event(
            "delivery_status_sync_failed",
            actor_user_id=actor_id,
            subject_type="order",
            subject_id=order_id,
            severity="ALERT",
            metadata={"delivery_id": delivery_id, "order_status": order_status, "delivery_target": target, "error": error},
            commit=True,
        )
        return "failed"
