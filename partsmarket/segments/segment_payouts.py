from __future__ import annotations

from flask import Blueprint, current_app, request

from partsmarket.extensions import db
from partsmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from partsmarket.integrations.payments.factory import build_payments_provider
from partsmarket.services.payout_service import PayoutService
from partsmarket.utils.auth import current_user, driver_for, forbidden, is_admin, unauthorized, vendor_for
from partsmarket.utils.responses import json_error, page_body, page_values, result_response

payouts_bp = Blueprint("payouts_bp", __name__, url_prefix="/api/payouts")
admin_payouts_bp = Blueprint("admin_payouts_bp", __name__, url_prefix="/api/admin/payouts")


def _resolve_payee(user, source) -> tuple[str, int] | None:
    """Pick the payee account a request acts on.

    Admins may name any account with user_type/user_id; everyone else acts on
    their own vendor or driver profile (vendor first when they have both).
    """
    wanted = (source.get("user_type") or "").strip().upper()
    if is_admin(user) and source.get("user_id") not in (None, ""):
        try:
            return (wanted or "VENDOR"), int(source.get("user_id"))
        except (TypeError, ValueError):
            return None
    vendor = vendor_for(user)
    driver = driver_for(user)
    if wanted in ("", "VENDOR") and vendor is not None:
        return "VENDOR", int(vendor.id)
    if wanted in ("", "DRIVER") and driver is not None:
        return "DRIVER", int(driver.id)
    return None


def _service(provider=None) -> PayoutService:
    return PayoutService(db.session, provider=provider, config=current_app.config)


@payouts_bp.post("/request")
def request_payout():
    user = current_user()
    if not user:
        return unauthorized()
    data = request.get_json(silent=True) or {}
    payee = _resolve_payee(user, data)
    if payee is None:
        return forbidden("Vendor or driver account required")
    user_type, payee_id = payee
    result = _service().request_payout(payee_id, user_type, data.get("amount"), requested_by=user.id)
    return result_response(result, lambda row: {"payout_request": row.to_dict()}, status=201)


@payouts_bp.get("/balance")
def payout_balance():
    user = current_user()
    if not user:
        return unauthorized()
    payee = _resolve_payee(user, request.args)
    if payee is None:
        return forbidden("Vendor or driver account required")
    user_type, payee_id = payee
    result = _service().available_balance(payee_id, user_type)
    return result_response(result, lambda balance: {"balance": balance})


@payouts_bp.get("/requests")
def payout_requests():
    user = current_user()
    if not user:
        return unauthorized()
    limit, offset = page_values(request.args)
    if is_admin(user):
        user_type = request.args.get("user_type")
        user_id = request.args.get("user_id")
        try:
            user_id = int(user_id) if user_id else None
        except ValueError:
            return json_error("VALIDATION", "user_id must be an integer", 400)
    else:
        payee = _resolve_payee(user, request.args)
        if payee is None:
            return forbidden("Vendor or driver account required")
        user_type, user_id = payee
    result = _service().list_payout_requests(
        user_id=user_id,
        user_type=user_type,
        status=request.args.get("status"),
        limit=limit,
        offset=offset,
    )
    return result_response(result, lambda page: page_body(page, lambda row: row.to_dict()))


@admin_payouts_bp.post("/<int:payout_request_id>/process")
def process_payout(payout_request_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    if not is_admin(user):
        return forbidden("Admin access required")
    data = request.get_json(silent=True) or {}
    try:
        provider = build_payments_provider(current_app.config)
    except IntegrationDisabledError:
        return json_error("PAYMENTS_DISABLED", "Payments are disabled", 503)
    except IntegrationMisconfiguredError as e:
        current_app.logger.error("payments_misconfigured err=%s", e)
        return json_error("PAYMENTS_MISCONFIGURED", "Payments are not configured", 503)
    result = _service(provider).process_payout_request(
        payout_request_id,
        data.get("action") or "",
        user.id,
        notes=data.get("notes"),
    )
    return result_response(
        result,
        lambda row: {
            "payout_request": row.to_dict(),
            "transfer_status": result.details.get("transfer_status"),
        },
    )
