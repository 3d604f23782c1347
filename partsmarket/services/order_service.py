from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select

from partsmarket.models import Address, Customer, Order, OrderItem, Part, Promotion, Vendor
from partsmarket.services import ledger, pricing
from partsmarket.services.delivery_service import create_delivery_record
from partsmarket.services.inventory_service import schedule_low_stock_checks
from partsmarket.services.order_state import OrderStatus, OrderType, PaymentStatus
from partsmarket.services.results import ErrorKind, ServiceResult, UnitAborted
from partsmarket.utils.audit import log_action
from partsmarket.utils.geo import distance_km
from partsmarket.utils.references import generate_order_number, unique_value

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class PaymentMethod:
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    MOBILE_MONEY = "MOBILE_MONEY"

    ALL = {CARD, BANK_TRANSFER, CASH_ON_DELIVERY, MOBILE_MONEY}


@dataclass
class OrderLineRequest:
    part_id: int
    quantity: int
    notes: str | None = None


@dataclass
class CreateOrderRequest:
    customer_id: int
    vendor_id: int
    items: list[OrderLineRequest] = field(default_factory=list)
    order_type: str = OrderType.DELIVERY
    payment_method: str = PaymentMethod.CARD
    address_id: int | None = None
    promo_code: str | None = None
    notes: str | None = None
    driver_instructions: str | None = None


def _merge_lines(items: list[OrderLineRequest]) -> list[OrderLineRequest]:
    merged: dict[int, OrderLineRequest] = {}
    for line in items:
        pid = int(line.part_id)
        if pid in merged:
            current = merged[pid]
            notes = "; ".join(n for n in (current.notes, line.notes) if n)
            merged[pid] = OrderLineRequest(part_id=pid, quantity=current.quantity + int(line.quantity), notes=notes or None)
        else:
            merged[pid] = OrderLineRequest(part_id=pid, quantity=int(line.quantity), notes=line.notes)
    return list(merged.values())


def _validate_shape(req: CreateOrderRequest) -> ServiceResult | None:
    if req.order_type not in OrderType.ALL:
        return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown order type {req.order_type}")
    if req.payment_method not in PaymentMethod.ALL:
        return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown payment method {req.payment_method}")
    if not req.items:
        return ServiceResult.failure(ErrorKind.VALIDATION, "Order must contain at least one item")
    for line in req.items:
        qty = line.quantity
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            return ServiceResult.failure(
                ErrorKind.VALIDATION,
                "Item quantity must be a positive whole number",
                part_id=line.part_id,
            )
    if req.order_type == OrderType.DELIVERY and not req.address_id:
        return ServiceResult.failure(ErrorKind.VALIDATION, "Address is required for delivery orders")
    return None


class OrderService:
    """Turns a cart into a persisted order, reserving stock in the same unit of work."""

    def __init__(self, session, *, config=None):
        self.session = session
        self.config = config or {}
        self.fees = pricing.FeeSchedule.from_config(self.config)

    def _find_promotion(self, code: str | None, vendor_id: int, now: datetime) -> Promotion | None:
        code = (code or "").strip()
        if not code:
            return None
        return (
            self.session.query(Promotion)
            .filter(
                Promotion.promotion_code == code,
                Promotion.vendor_id == int(vendor_id),
                Promotion.is_active.is_(True),
                Promotion.start_date <= now,
                Promotion.end_date >= now,
            )
            .first()
        )

    def _available_stock(self, part_id: int) -> int:
        value = self.session.execute(select(Part.stock_quantity).where(Part.id == int(part_id))).scalar()
        return int(value or 0)

    def _order_number_taken(self, value: str) -> bool:
        return self.session.query(Order.id).filter(Order.order_number == value).first() is not None

    def _reserve_lines(self, vendor: Vendor, lines: list[OrderLineRequest]) -> list[pricing.PricedLine]:
        priced = []
        for line in lines:
            part = self.session.get(Part, int(line.part_id))
            if part is None or int(part.vendor_id) != int(vendor.id) or not bool(part.is_active):
                raise UnitAborted(
                    ServiceResult.failure(
                        ErrorKind.NOT_FOUND,
                        f"Part {line.part_id} not found or not available from this vendor",
                        part_id=int(line.part_id),
                    )
                )
            price = pricing.unit_price(part.price, part.discounted_price)
            name = part.name
            if not ledger.decrement_stock(self.session, part_id=part.id, vendor_id=vendor.id, quantity=line.quantity):
                available = self._available_stock(part.id)
                raise UnitAborted(
                    ServiceResult.failure(
                        ErrorKind.INSUFFICIENT_STOCK,
                        f"Insufficient stock for {name}. Available: {available}",
                        part_id=int(part.id),
                        part_name=name,
                        available=available,
                        requested=int(line.quantity),
                    )
                )
            priced.append(
                pricing.PricedLine(
                    part_id=int(part.id),
                    name=name,
                    quantity=int(line.quantity),
                    unit_price=price,
                    subtotal=pricing.line_subtotal(price, line.quantity),
                )
            )
        return priced

    def create_order(self, req: CreateOrderRequest, *, actor_id: int | None = None) -> ServiceResult:
        invalid = _validate_shape(req)
        if invalid is not None:
            return invalid

        customer = self.session.get(Customer, int(req.customer_id))
        if customer is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Customer not found")
        vendor = self.session.get(Vendor, int(req.vendor_id))
        if vendor is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Vendor not found")

        address = None
        if req.address_id:
            address = self.session.get(Address, int(req.address_id))
            if address is None:
                return ServiceResult.failure(ErrorKind.NOT_FOUND, "Address not found")
            if int(address.customer_id) != int(customer.id):
                return ServiceResult.failure(ErrorKind.VALIDATION, "Address does not belong to this customer")

        lines = _merge_lines(req.items)
        now = datetime.utcnow()
        collection = req.order_type == OrderType.COLLECTION
        distance = None
        if not collection and address is not None and address.has_coordinates() and vendor.has_coordinates():
            distance = distance_km(vendor.latitude, vendor.longitude, address.latitude, address.longitude)

        try:
            priced = self._reserve_lines(vendor, lines)
            promotion = self._find_promotion(req.promo_code, vendor.id, now)
            if req.promo_code and promotion is None:
                logger.info("promo_code_not_applied vendor_id=%s code=%s", vendor.id, req.promo_code)
            quote = pricing.quote(
                priced,
                distance_km=distance,
                collection=collection,
                promotion=promotion,
                vendor_id=vendor.id,
                commission_rate=vendor.commission_rate,
                schedule=self.fees,
                now=now,
            )

            notes = (req.notes or "").strip()
            order = Order(
                order_number=unique_value(generate_order_number, self._order_number_taken),
                customer_id=int(customer.id),
                vendor_id=int(vendor.id),
                address_id=int(address.id) if address is not None else None,
                order_type=req.order_type,
                subtotal=quote.subtotal,
                delivery_fee=quote.delivery_fee,
                tax=quote.tax,
                discount=quote.discount,
                total=quote.total,
                commission_rate=quote.commission_rate,
                commission_amount=quote.commission_amount,
                vendor_earning=quote.vendor_earning,
                payment_method=req.payment_method,
                payment_status=PaymentStatus.PENDING,
                order_status=OrderStatus.RECEIVED,
                promo_code=(req.promo_code or "").strip() or None,
                notes=f"{now.isoformat()}: {notes}" if notes else None,
            )
            self.session.add(order)
            self.session.flush()

            for line, requested in zip(priced, lines):
                self.session.add(
                    OrderItem(
                        order_id=int(order.id),
                        part_id=line.part_id,
                        part_name=line.name,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        subtotal=line.subtotal,
                        notes=requested.notes,
                    )
                )

            if not collection:
                create_delivery_record(
                    self.session,
                    order,
                    start=(vendor.latitude, vendor.longitude),
                    destination=(address.latitude, address.longitude),
                    distance=distance,
                    instructions=req.driver_instructions,
                )

            log_action(
                self.session,
                "ORDER_CREATED",
                "ORDER",
                order.id,
                performed_by=actor_id,
                details={"order_number": order.order_number, "total": quote.total, "items": len(priced)},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            logger.info("order_rejected customer_id=%s vendor_id=%s error=%s", req.customer_id, req.vendor_id, aborted.result.error)
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("order_create_failed customer_id=%s vendor_id=%s", req.customer_id, req.vendor_id)
            return ServiceResult.internal()

        logger.info(
            "order_created order_id=%s order_number=%s total=%s vendor_earning=%s",
            order.id,
            order.order_number,
            order.total,
            order.vendor_earning,
        )
        schedule_low_stock_checks(line.part_id for line in priced)
        return ServiceResult.success(order)

    def get_order(self, order_id: int) -> ServiceResult:
        order = self.session.get(Order, int(order_id))
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Order not found")
        return ServiceResult.success(order)

    def list_orders(
        self,
        *,
        customer_id: int | None = None,
        vendor_id: int | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ServiceResult:
        q = self.session.query(Order)
        if customer_id is not None:
            q = q.filter(Order.customer_id == int(customer_id))
        if vendor_id is not None:
            q = q.filter(Order.vendor_id == int(vendor_id))
        if status:
            wanted = status.strip().upper()
            if wanted not in OrderStatus.ALL:
                return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown order status {status}")
            q = q.filter(Order.order_status == wanted)
        limit = max(1, min(int(limit or 20), MAX_PAGE_SIZE))
        offset = max(0, int(offset or 0))
        total = q.count()
        rows = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset).all()
        return ServiceResult.success({"items": rows, "total": total, "limit": limit, "offset": offset})
