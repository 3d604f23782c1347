from __future__ import annotations

from dataclasses import dataclass


class GatewayStatus:
    SUCCESSFUL = "successful"
    FAILED = "failed"
    PENDING = "pending"

    _ALIASES = {
        "successful": SUCCESSFUL,
        "success": SUCCESSFUL,
        "completed": SUCCESSFUL,
        "failed": FAILED,
        "failure": FAILED,
        "cancelled": FAILED,
        "reversed": FAILED,
        "error": FAILED,
    }

    @classmethod
    def normalize(cls, value: str | None) -> str:
        return cls._ALIASES.get((value or "").strip().lower(), cls.PENDING)


@dataclass
class GatewayEvent:
    """Typed view of an inbound webhook body; unknown fields are dropped."""

    event: str
    event_id: str
    status: str
    reference: str
    gateway_id: str = ""
    amount: float | None = None
    currency: str = ""
    message: str = ""


@dataclass
class PaymentInitializeResult:
    session_url: str
    reference: str
    provider: str


@dataclass
class PaymentVerifyResult:
    status: str
    amount: float
    currency: str
    reference: str
    gateway_reference: str
    message: str = ""


@dataclass
class TransferResult:
    status: str
    reference: str
    gateway_reference: str
    message: str = ""


@dataclass
class RefundResult:
    status: str
    gateway_reference: str
    message: str = ""


class PaymentsProvider:
    name = "unknown"

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
        raise NotImplementedError

    def verify(self, *, transaction_id: str | None = None, reference: str | None = None) -> PaymentVerifyResult:
        raise NotImplementedError

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
        raise NotImplementedError

    def refund(self, *, gateway_reference: str, amount: float) -> RefundResult:
        raise NotImplementedError
