from __future__ import annotations

from flask import Blueprint, current_app, request

from partsmarket.extensions import db
from partsmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from partsmarket.integrations.payments.factory import build_payments_provider
from partsmarket.models import Order, Transaction
from partsmarket.services.payment_service import PaymentService
from partsmarket.utils.auth import current_user, customer_for, forbidden, is_admin, unauthorized, vendor_for
from partsmarket.utils.responses import json_error, page_body, page_values, result_response

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")
admin_payments_bp = Blueprint("admin_payments_bp", __name__, url_prefix="/api/admin/payments")


def payments_service_or_error():
    """Build a PaymentService for this request, or the 503 response when payments are unavailable."""
    try:
        provider = build_payments_provider(current_app.config)
    except IntegrationDisabledError:
        return None, json_error("PAYMENTS_DISABLED", "Payments are disabled", 503)
    except IntegrationMisconfiguredError as e:
        current_app.logger.error("payments_misconfigured err=%s", e)
        return None, json_error("PAYMENTS_MISCONFIGURED", "Payments are not configured", 503)
    return PaymentService(db.session, provider=provider, config=current_app.config), None


def _owns_order(user, order: Order) -> bool:
    customer = customer_for(user)
    return customer is not None and int(customer.id) == int(order.customer_id)


def _txn_body(txn) -> dict:
    return {"transaction": txn.to_dict() if txn is not None else None}


@payments_bp.post("/initialize")
def initialize_payment():
    user = current_user()
    if not user:
        return unauthorized()
    data = request.get_json(silent=True) or {}
    try:
        order_id = int(data.get("order_id"))
    except (TypeError, ValueError):
        return json_error("VALIDATION", "order_id is required", 400)
    order = db.session.get(Order, order_id)
    if order is None:
        return json_error("NOT_FOUND", "Order not found", 404)
    if not (is_admin(user) or _owns_order(user, order)):
        return forbidden("Not allowed to pay for this order")

    amount = data.get("amount")
    if amount is not None:
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            return json_error("VALIDATION", "amount must be a number", 400)

    service, error = payments_service_or_error()
    if error is not None:
        return error
    result = service.initialize_payment(
        order_id,
        amount=amount,
        method=data.get("payment_method"),
        reference=data.get("reference"),
        redirect_url=data.get("redirect_url"),
        actor_id=user.id,
    )
    return result_response(
        result,
        lambda v: {
            "transaction": v["transaction"].to_dict(),
            "reference": v["reference"],
            "session_url": v["session_url"],
        },
        status=201,
    )


@payments_bp.post("/verify")
def verify_payment():
    user = current_user()
    if not user:
        return unauthorized()
    data = request.get_json(silent=True) or {}
    reference = (data.get("reference") or request.args.get("tx_ref") or "").strip() or None
    transaction_id = str(data.get("transaction_id") or request.args.get("transaction_id") or "").strip() or None

    if reference and not is_admin(user):
        txn = Transaction.query.filter_by(reference=reference).first()
        if txn is not None:
            customer = customer_for(user)
            if customer is None or int(txn.customer_id or 0) != int(customer.id):
                return forbidden("Not allowed to verify this payment")

    service, error = payments_service_or_error()
    if error is not None:
        return error
    result = service.verify_payment(transaction_id=transaction_id, reference=reference)
    if not result.ok and result.value is not None:
        return json_error(
            result.error,
            result.message,
            result.http_status,
            transaction=result.value.to_dict(),
        )
    return result_response(
        result,
        lambda txn: {**_txn_body(txn), "gateway_status": result.details.get("gateway_status")},
    )


@payments_bp.get("/transactions")
def transactions():
    user = current_user()
    if not user:
        return unauthorized()
    filters = {
        "type": request.args.get("type"),
        "status": request.args.get("status"),
    }
    if request.args.get("order_id"):
        try:
            filters["order_id"] = int(request.args.get("order_id"))
        except ValueError:
            return json_error("VALIDATION", "order_id must be an integer", 400)
    if not is_admin(user):
        customer = customer_for(user)
        vendor = vendor_for(user)
        if customer is not None:
            filters["customer_id"] = customer.id
        elif vendor is not None:
            filters["vendor_id"] = vendor.id
        else:
            return forbidden("No transaction history for this account")
    limit, offset = page_values(request.args)
    service = PaymentService(db.session, provider=None, config=current_app.config)
    result = service.transaction_history(limit=limit, offset=offset, **filters)
    return result_response(result, lambda page: page_body(page, lambda t: t.to_dict()))


@payments_bp.post("/refunds")
def request_refund():
    user = current_user()
    if not user:
        return unauthorized()
    data = request.get_json(silent=True) or {}
    try:
        order_id = int(data.get("order_id"))
        transaction_id = int(data.get("transaction_id"))
    except (TypeError, ValueError):
        return json_error("VALIDATION", "order_id and transaction_id are required", 400)
    order = db.session.get(Order, order_id)
    if order is None:
        return json_error("NOT_FOUND", "Order not found", 404)
    if not (is_admin(user) or _owns_order(user, order)):
        return forbidden("Not allowed to request a refund for this order")

    service = PaymentService(db.session, provider=None, config=current_app.config)
    result = service.request_refund(
        order_id,
        transaction_id,
        data.get("amount"),
        data.get("reason") or "",
        requested_by=user.id,
    )
    return result_response(result, lambda r: {"refund": r.to_dict()}, status=201)


@admin_payments_bp.post("/refunds/<int:refund_id>/process")
def process_refund(refund_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    if not is_admin(user):
        return forbidden("Admin access required")
    data = request.get_json(silent=True) or {}
    service, error = payments_service_or_error()
    if error is not None:
        return error
    result = service.process_refund(refund_id, user.id, data.get("action") or "", notes=data.get("notes"))
    return result_response(result, lambda r: {"refund": r.to_dict()})
