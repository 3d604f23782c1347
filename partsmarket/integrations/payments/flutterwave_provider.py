from __future__ import annotations

import hashlib

import requests

from partsmarket.integrations.common import GatewayError
from partsmarket.integrations.payments.base import (
    GatewayEvent,
    GatewayStatus,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    RefundResult,
    TransferResult,
)

DEFAULT_BASE_URL = "https://api.flutterwave.com/v3"


class FlutterwavePaymentsProvider(PaymentsProvider):
    name = "flutterwave"

    def __init__(self, secret_key: str, *, base_url: str = DEFAULT_BASE_URL, transfer_callback_url: str = "", timeout: int = 25):
        self.secret_key = secret_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.transfer_callback_url = transfer_callback_url
        self.timeout = timeout

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, code: str, *, json_body: dict | None = None, params: dict | None = None) -> dict:
        try:
            r = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=json_body,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GatewayError(code, type(e).__name__) from e
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or (j.get("status") or "").lower() != "success":
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            raise GatewayError(code, msg)
        data = j.get("data")
        return data if isinstance(data, dict) else {}

    def initialize(
        self,
        *,
        amount: float,
        currency: str,
        reference: str,
        customer_email: str,
        customer_name: str = "",
        redirect_url: str = "",
        metadata: dict | None = None,
    ) -> PaymentInitializeResult:
        payload = {
            "tx_ref": reference,
            "amount": float(amount),
            "currency": currency or "NGN",
            "redirect_url": redirect_url,
            "customer": {"email": customer_email, "name": customer_name},
            "meta": metadata or {},
        }
        data = self._call("POST", "/payments", "FLUTTERWAVE_INIT_FAILED", json_body=payload)
        return PaymentInitializeResult(
            session_url=(data.get("link") or "").strip(),
            reference=reference,
            provider=self.name,
        )

    def verify(self, *, transaction_id: str | None = None, reference: str | None = None) -> PaymentVerifyResult:
        if transaction_id:
            data = self._call("GET", f"/transactions/{str(transaction_id).strip()}/verify", "FLUTTERWAVE_VERIFY_FAILED")
        elif reference:
            data = self._call(
                "GET",
                "/transactions/verify_by_reference",
                "FLUTTERWAVE_VERIFY_FAILED",
                params={"tx_ref": reference.strip()},
            )
        else:
            raise GatewayError("FLUTTERWAVE_VERIFY_FAILED", "transaction_id or reference required")
        try:
            amount = float(data.get("amount") or 0.0)
        except (TypeError, ValueError):
            amount = 0.0
        return PaymentVerifyResult(
            status=GatewayStatus.normalize(data.get("status")),
            amount=amount,
            currency=(data.get("currency") or "NGN").strip().upper(),
            reference=str(data.get("tx_ref") or reference or "").strip(),
            gateway_reference=str(data.get("id") or data.get("flw_ref") or "").strip(),
            message=str(data.get("processor_response") or "").strip(),
        )

    def transfer(
        self,
        *,
        amount: float,
        currency: str,
        bank_code: str,
        account_number: str,
        reference: str,
        narration: str = "",
    ) -> TransferResult:
        payload = {
            "account_bank": bank_code,
            "account_number": account_number,
            "amount": float(amount),
            "narration": narration,
            "currency": currency or "NGN",
            "reference": reference,
            "debit_currency": currency or "NGN",
        }
        if self.transfer_callback_url:
            payload["callback_url"] = self.transfer_callback_url
        data = self._call("POST", "/transfers", "FLUTTERWAVE_TRANSFER_FAILED", json_body=payload)
        return TransferResult(
            status=GatewayStatus.normalize(data.get("status")),
            reference=str(data.get("reference") or reference),
            gateway_reference=str(data.get("id") or "").strip(),
            message=str(data.get("complete_message") or "").strip(),
        )

    def refund(self, *, gateway_reference: str, amount: float) -> RefundResult:
        data = self._call(
            "POST",
            f"/transactions/{str(gateway_reference).strip()}/refund",
            "FLUTTERWAVE_REFUND_FAILED",
            json_body={"amount": float(amount)},
        )
        status = GatewayStatus.normalize(data.get("status"))
        # Refunds are accepted asynchronously; "completed" and "pending" both mean queued at the gateway.
        if (data.get("status") or "").strip().lower() in ("pending", "completed"):
            status = GatewayStatus.SUCCESSFUL
        return RefundResult(
            status=status,
            gateway_reference=str(data.get("id") or "").strip(),
            message=str(data.get("comments") or "").strip(),
        )


def parse_webhook_event(payload) -> GatewayEvent | None:
    """Build a GatewayEvent from a Flutterwave webhook body, or None when it is not one."""
    if not isinstance(payload, dict):
        return None
    event = str(payload.get("event") or payload.get("event.type") or "").strip().lower()
    data = payload.get("data")
    if not event or not isinstance(data, dict):
        return None
    reference = str(data.get("tx_ref") or data.get("reference") or "").strip()
    gateway_id = str(data.get("id") or "").strip()
    raw_status = str(data.get("status") or "").strip()
    amount = data.get("amount")
    try:
        amount = float(amount) if amount is not None else None
    except (TypeError, ValueError):
        amount = None
    if gateway_id:
        event_id = f"{event}:{gateway_id}:{raw_status.lower()}"
    else:
        base = f"{event}:{reference}:{raw_status.lower()}:{amount}"
        event_id = hashlib.sha256(base.encode("utf-8")).hexdigest()[:32]
    return GatewayEvent(
        event=event,
        event_id=event_id[:128],
        status=GatewayStatus.normalize(raw_status),
        reference=reference,
        gateway_id=gateway_id,
        amount=amount,
        currency=str(data.get("currency") or "").strip().upper(),
        message=str(data.get("complete_message") or data.get("processor_response") or "").strip(),
    )
