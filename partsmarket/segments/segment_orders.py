from __future__ import annotations

from flask import Blueprint, current_app, request

from partsmarket.extensions import db
from partsmarket.models import Delivery, Order
from partsmarket.services.delivery_service import update_delivery_status
from partsmarket.services.order_service import CreateOrderRequest, OrderLineRequest, OrderService, PaymentMethod
from partsmarket.services.order_state import OrderStateMachine, OrderType
from partsmarket.utils.auth import current_user, customer_for, driver_for, forbidden, is_admin, unauthorized, vendor_for
from partsmarket.utils.responses import json_error, page_body, page_values, result_response

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")
vendor_orders_bp = Blueprint("vendor_orders_bp", __name__, url_prefix="/api/vendor")


def _order_body(order: Order) -> dict:
    return {"order": order.to_dict()}


def _optional_int(value):
    if value is None or value == "":
        return None
    return int(value)


def _parse_create_request(data: dict, customer_id: int) -> CreateOrderRequest:
    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raise ValueError("items must be a list")
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValueError("each item must be an object")
        items.append(
            OrderLineRequest(
                part_id=int(raw.get("part_id")),
                quantity=raw.get("quantity"),
                notes=(raw.get("notes") or "").strip() or None,
            )
        )
    return CreateOrderRequest(
        customer_id=int(customer_id),
        vendor_id=int(data.get("vendor_id")),
        items=items,
        order_type=(data.get("order_type") or OrderType.DELIVERY).strip().upper(),
        payment_method=(data.get("payment_method") or PaymentMethod.CARD).strip().upper(),
        address_id=_optional_int(data.get("address_id")),
        promo_code=(data.get("promo_code") or "").strip() or None,
        notes=data.get("notes"),
        driver_instructions=data.get("driver_instructions"),
    )


def _can_view(user, order: Order) -> bool:
    if is_admin(user):
        return True
    customer = customer_for(user)
    if customer is not None and int(customer.id) == int(order.customer_id):
        return True
    vendor = vendor_for(user)
    return vendor is not None and int(vendor.id) == int(order.vendor_id)


def _is_order_vendor(user, order: Order) -> bool:
    vendor = vendor_for(user)
    return vendor is not None and int(vendor.id) == int(order.vendor_id)


@orders_bp.post("/orders")
def create_order():
    user = current_user()
    if not user:
        return unauthorized()
    data = request.get_json(silent=True) or {}

    if is_admin(user) and data.get("customer_id") is not None:
        customer_id = data.get("customer_id")
    else:
        customer = customer_for(user)
        if customer is None:
            return forbidden("Only customers can place orders")
        customer_id = customer.id

    try:
        req = _parse_create_request(data, customer_id)
    except (TypeError, ValueError) as e:
        return json_error("VALIDATION", f"Invalid order payload: {e}", 400)

    result = OrderService(db.session, config=current_app.config).create_order(req, actor_id=user.id)
    return result_response(result, _order_body, status=201)


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    result = OrderService(db.session).get_order(order_id)
    if result.ok and not _can_view(user, result.value):
        return forbidden("Not allowed to view this order")
    return result_response(result, _order_body)


@orders_bp.get("/orders/my")
def my_orders():
    user = current_user()
    if not user:
        return unauthorized()
    customer = customer_for(user)
    if customer is None:
        return forbidden("Only customers have order history")
    limit, offset = page_values(request.args)
    result = OrderService(db.session).list_orders(
        customer_id=customer.id,
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return result_response(result, lambda page: page_body(page, lambda o: o.to_dict(include_items=False)))


@vendor_orders_bp.get("/orders")
def vendor_orders():
    user = current_user()
    if not user:
        return unauthorized()
    vendor = vendor_for(user)
    if vendor is None:
        return forbidden("Vendor account required")
    limit, offset = page_values(request.args)
    result = OrderService(db.session).list_orders(
        vendor_id=vendor.id,
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return result_response(result, lambda page: page_body(page, lambda o: o.to_dict(include_items=False)))


@orders_bp.post("/orders/<int:order_id>/status")
def update_order_status(order_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    order = db.session.get(Order, int(order_id))
    if order is None:
        return json_error("NOT_FOUND", "Order not found", 404)
    if not (is_admin(user) or _is_order_vendor(user, order)):
        return forbidden("Only the vendor or an admin can update order status")
    data = request.get_json(silent=True) or {}
    result = OrderStateMachine(db.session).update_status(
        order_id,
        data.get("status") or "",
        notes=data.get("notes"),
        actor_id=user.id,
    )
    return result_response(
        result,
        lambda o: {"order": o.to_dict(), "delivery_sync": result.details.get("delivery_sync")},
    )


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    order = db.session.get(Order, int(order_id))
    if order is None:
        return json_error("NOT_FOUND", "Order not found", 404)
    if not _can_view(user, order):
        return forbidden("Not allowed to cancel this order")
    data = request.get_json(silent=True) or {}
    result = OrderStateMachine(db.session).cancel_order(order_id, data.get("reason") or "", cancelled_by=user.id)
    return result_response(
        result,
        lambda o: {"order": o.to_dict(), "delivery_sync": result.details.get("delivery_sync")},
    )


@orders_bp.post("/deliveries/<int:delivery_id>/status")
def driver_delivery_status(delivery_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    delivery = db.session.get(Delivery, int(delivery_id))
    if delivery is None:
        return json_error("NOT_FOUND", "Delivery not found", 404)
    driver = driver_for(user)
    assigned = driver is not None and delivery.driver_id is not None and int(delivery.driver_id) == int(driver.id)
    if not (is_admin(user) or assigned):
        return forbidden("Only the assigned driver or an admin can update this delivery")
    data = request.get_json(silent=True) or {}
    result = update_delivery_status(db.session, delivery_id, data.get("status") or "")
    return result_response(result, lambda d: {"delivery": d.to_dict()})
