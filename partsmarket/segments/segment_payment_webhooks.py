from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from partsmarket.extensions import db
from partsmarket.integrations.payments.factory import build_payments_provider
from partsmarket.services.payment_service import PaymentService
from partsmarket.services.payout_service import PayoutService
from partsmarket.utils.observability import get_request_id
from partsmarket.utils.responses import json_error

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")

SIGNATURE_HEADER = "verif-hash"


def _ack(result):
    if not result.ok:
        return json_error(result.error, result.message, result.http_status)
    body = dict(result.value or {})
    body.setdefault("ok", True)
    rid = get_request_id()
    if rid:
        body["trace_id"] = rid
    return jsonify(body), 200


def _handle(source: str, handler_factory):
    raw = request.get_data() or b""
    signature = request.headers.get(SIGNATURE_HEADER)
    payload = request.get_json(silent=True)
    try:
        provider = build_payments_provider(current_app.config)
        handler = handler_factory(provider)
        return _ack(handler(raw, signature, payload))
    except Exception:
        db.session.rollback()
        current_app.logger.exception("webhook_handler_failed source=%s", source)
        return jsonify({"ok": False, "error": "WEBHOOK_HANDLER_FAILED", "trace_id": get_request_id()}), 200


@webhooks_bp.post("/flutterwave")
def flutterwave_webhook():
    return _handle(
        "flutterwave",
        lambda provider: PaymentService(db.session, provider=provider, config=current_app.config).handle_payment_webhook,
    )


@webhooks_bp.post("/flutterwave/transfers")
def flutterwave_transfer_webhook():
    return _handle(
        "flutterwave/transfers",
        lambda provider: PayoutService(db.session, provider=provider, config=current_app.config).handle_transfer_webhook,
    )
