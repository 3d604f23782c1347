from __future__ import annotations

from partsmarket.integrations.payments.base import (
    GatewayStatus,
    PaymentInitializeResult,
    PaymentsProvider,
    PaymentVerifyResult,
    RefundResult,
    TransferResult,
)


class MockPaymentsProvider(PaymentsProvider):
    """Local stand-in for the gateway: every charge, transfer and refund succeeds."""

    name = "mock"

    def __init__(self, *, currency: str = "NGN"):
        self.currency = currency
        self._amounts: dict[str, float] = {}

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
        self._amounts[reference] = float(amount)
        return PaymentInitializeResult(
            session_url=f"https://example.com/mock/pay?tx_ref={reference}",
            reference=reference,
            provider=self.name,
        )

    def verify(self, *, transaction_id: str | None = None, reference: str | None = None) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        return PaymentVerifyResult(
            status=GatewayStatus.SUCCESSFUL,
            amount=float(self._amounts.get(ref, 0.0)),
            currency=self.currency,
            reference=ref,
            gateway_reference=str(transaction_id or f"mock-{ref}"),
            message="mock",
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
        return TransferResult(
            status=GatewayStatus.SUCCESSFUL,
            reference=reference,
            gateway_reference=f"mock-trf-{reference}",
            message="mock",
        )

    def refund(self, *, gateway_reference: str, amount: float) -> RefundResult:
        return RefundResult(
            status=GatewayStatus.SUCCESSFUL,
            gateway_reference=f"mock-rfd-{gateway_reference}",
            message="mock",
        )
