from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from partsmarket.integrations.common import GatewayError
from partsmarket.integrations.payments.base import GatewayStatus, PaymentVerifyResult
from partsmarket.integrations.payments.flutterwave_provider import parse_webhook_event
from partsmarket.models import Customer, Order, Refund, Transaction, TransactionMetadata
from partsmarket.services import ledger, pricing
from partsmarket.services.order_service import PaymentMethod
from partsmarket.services.order_state import OrderStatus, PaymentStatus, append_note
from partsmarket.services.results import ErrorKind, ServiceResult, UnitAborted
from partsmarket.services.webhook_intake import WebhookStatus, finish_delivery, record_delivery, verify_signature
from partsmarket.utils.audit import log_action
from partsmarket.utils.events import log_event
from partsmarket.utils.money import money_float, same_amount
from partsmarket.utils.references import generate_reference, unique_value

logger = logging.getLogger(__name__)

WEBHOOK_PROVIDER = "flutterwave"
MAX_PAGE_SIZE = 100


class TransactionType:
    PAYMENT = "PAYMENT"
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    # Driver share of a completed delivery; no gateway involved.
    EARNING = "EARNING"

    ALL = {PAYMENT, PAYOUT, REFUND, EARNING}


class TransactionStatus:
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"

    ALL = {PENDING, SUCCESSFUL, FAILED}
    TERMINAL = {SUCCESSFUL, FAILED}


class RefundStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"


class ReviewAction:
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    ALL = {APPROVE, REJECT}


def _clean(value) -> str | None:
    text = str(value if value is not None else "").strip()
    return text or None


def _payment_status_after_refunds(total: float, refunded: float) -> str:
    if refunded <= ledger.BALANCE_TOLERANCE:
        return PaymentStatus.PAID
    if float(total) - float(refunded) <= ledger.BALANCE_TOLERANCE:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PARTIALLY_REFUNDED


class PaymentService:
    """Charges, gateway reconciliation and refunds for orders.

    Gateway calls are made between units of work, never inside one. Each
    transaction reference is applied at most once: every status change is a
    conditional flip out of PENDING, so redelivered webhooks and repeated
    verifications fall through as no-ops.
    """

    def __init__(self, session, *, provider, config=None):
        self.session = session
        self.provider = provider
        self.config = config or {}

    def _reference_taken(self, value: str) -> bool:
        return self.session.query(Transaction.id).filter(Transaction.reference == value).first() is not None

    def _payment_txn(self, reference: str) -> Transaction | None:
        return self.session.query(Transaction).filter_by(reference=reference, type=TransactionType.PAYMENT).first()

    # ------------------------------------------------------------------
    # initialize
    # ------------------------------------------------------------------

    def initialize_payment(
        self,
        order_id: int,
        *,
        amount: float | None = None,
        method: str | None = None,
        reference: str | None = None,
        redirect_url: str | None = None,
        actor_id: int | None = None,
    ) -> ServiceResult:
        order = self.session.get(Order, int(order_id))
        if order is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Order not found")
        if bool(order.is_cancelled) or order.order_status == OrderStatus.CANCELLED:
            return ServiceResult.failure(ErrorKind.CONFLICT, "Order is cancelled")
        if order.payment_status != PaymentStatus.PENDING:
            return ServiceResult.failure(
                ErrorKind.CONFLICT,
                f"Order payment is already {order.payment_status}",
                payment_status=order.payment_status,
            )
        if amount is not None and not same_amount(amount, order.total):
            return ServiceResult.failure(
                ErrorKind.VALIDATION,
                "Payment amount does not match the order total",
                expected=float(order.total),
                received=money_float(amount),
            )
        method = (method or order.payment_method or PaymentMethod.CARD).strip().upper()
        if method not in PaymentMethod.ALL:
            return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown payment method {method}")

        reference = _clean(reference)
        txn = None
        if reference:
            existing = self.session.query(Transaction).filter_by(reference=reference).first()
            if existing is not None:
                if existing.type != TransactionType.PAYMENT or int(existing.order_id or 0) != int(order.id):
                    return ServiceResult.failure(ErrorKind.CONFLICT, "Reference already used by another transaction")
                if existing.status != TransactionStatus.PENDING:
                    return ServiceResult.failure(
                        ErrorKind.CONFLICT,
                        f"Transaction {reference} is already {existing.status}",
                        transaction_status=existing.status,
                    )
                txn = existing
        else:
            reference = unique_value(lambda: generate_reference("PAY"), self._reference_taken)

        try:
            if txn is None:
                txn = Transaction(
                    reference=reference,
                    type=TransactionType.PAYMENT,
                    amount=float(order.total),
                    fee=pricing.payment_fee(order.total),
                    currency=(self.config.get("PAYMENT_CURRENCY") or "NGN"),
                    status=TransactionStatus.PENDING,
                    payment_method=method,
                    order_id=int(order.id),
                    customer_id=int(order.customer_id),
                    vendor_id=int(order.vendor_id),
                )
                txn.set_meta(TransactionMetadata(order_number=order.order_number, provider=self.provider.name))
                self.session.add(txn)
            bound = ledger.compare_and_set(
                self.session,
                Order,
                order.id,
                field="payment_status",
                expected=PaymentStatus.PENDING,
                values={"payment_reference": reference, "payment_method": method},
            )
            if not bound:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Order payment changed by another request"))
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except IntegrityError:
            self.session.rollback()
            return ServiceResult.failure(ErrorKind.CONFLICT, "Reference already used by another transaction")
        except Exception:
            self.session.rollback()
            logger.exception("payment_initialize_failed order_id=%s", order_id)
            return ServiceResult.internal()

        customer = self.session.get(Customer, int(order.customer_id))
        try:
            session_info = self.provider.initialize(
                amount=float(txn.amount),
                currency=txn.currency,
                reference=reference,
                customer_email=(customer.email if customer is not None else "") or "",
                customer_name=customer.full_name if customer is not None else "",
                redirect_url=redirect_url or self.config.get("PAYMENT_REDIRECT_URL") or "",
                metadata={"order_id": int(order.id), "order_number": order.order_number},
            )
        except Exception as e:
            if isinstance(e, GatewayError):
                logger.warning("payment_gateway_initialize_failed reference=%s code=%s", reference, e.code)
            else:
                logger.exception("payment_gateway_initialize_failed reference=%s", reference)
            self._mark_failed(txn, message=str(e)[:200], actor_id=actor_id)
            return ServiceResult.failure(
                ErrorKind.UPSTREAM_FAILURE,
                "Payment gateway could not open a payment session",
                value=txn,
            )

        meta = txn.meta()
        meta.session_url = session_info.session_url
        txn.set_meta(meta)
        self.session.commit()
        logger.info("payment_initialized order_id=%s reference=%s amount=%s", order.id, reference, txn.amount)
        return ServiceResult.success({"transaction": txn, "reference": reference, "session_url": session_info.session_url})

    def _mark_failed(self, txn: Transaction, *, message: str = "", actor_id: int | None = None) -> bool:
        meta = txn.meta()
        meta.gateway_message = message or meta.gateway_message
        try:
            flipped = ledger.compare_and_set(
                self.session,
                Transaction,
                txn.id,
                field="status",
                expected=TransactionStatus.PENDING,
                values={"status": TransactionStatus.FAILED, "metadata_json": meta.to_json()},
            )
            if flipped:
                log_action(
                    self.session,
                    "PAYMENT_FAILED",
                    "TRANSACTION",
                    txn.id,
                    performed_by=actor_id,
                    details={"reference": txn.reference, "message": message},
                )
            self.session.commit()
            return flipped
        except Exception:
            self.session.rollback()
            logger.exception("payment_mark_failed_error reference=%s", txn.reference)
            return False

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    @staticmethod
    def _terminal_result(txn: Transaction) -> ServiceResult | None:
        if txn.status == TransactionStatus.SUCCESSFUL:
            return ServiceResult(ok=True, value=txn, details={"already_applied": True})
        if txn.status == TransactionStatus.FAILED:
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, "Payment failed", value=txn)
        return None

    def verify_payment(self, *, transaction_id: str | None = None, reference: str | None = None) -> ServiceResult:
        transaction_id = _clean(transaction_id)
        reference = _clean(reference)
        if not transaction_id and not reference:
            return ServiceResult.failure(ErrorKind.VALIDATION, "transaction_id or reference is required")

        txn = None
        if reference:
            txn = self._payment_txn(reference)
            if txn is None:
                return ServiceResult.failure(ErrorKind.NOT_FOUND, "Transaction not found")
            done = self._terminal_result(txn)
            if done is not None:
                return done

        try:
            gateway = self.provider.verify(transaction_id=transaction_id, reference=reference)
        except GatewayError as e:
            logger.warning("payment_verify_gateway_error reference=%s code=%s", reference, e.code)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, "Payment gateway could not be reached", value=txn)
        except Exception:
            logger.exception("payment_verify_gateway_error reference=%s", reference)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, "Payment gateway could not be reached", value=txn)

        if txn is None:
            echoed = _clean(gateway.reference)
            txn = self._payment_txn(echoed) if echoed else None
            if txn is None:
                return ServiceResult.failure(ErrorKind.NOT_FOUND, "Transaction not found")
            done = self._terminal_result(txn)
            if done is not None:
                return done
        elif gateway.reference and gateway.reference != txn.reference:
            logger.warning("payment_verify_reference_mismatch local=%s gateway=%s", txn.reference, gateway.reference)
            return ServiceResult.failure(ErrorKind.VALIDATION, "Gateway transaction does not match this reference")

        if gateway.status == GatewayStatus.SUCCESSFUL:
            return self._apply_success(txn, gateway)
        if gateway.status == GatewayStatus.FAILED:
            self._mark_failed(txn, message=gateway.message or "declined")
            self.session.refresh(txn)
            if txn.status == TransactionStatus.SUCCESSFUL:
                return ServiceResult(ok=True, value=txn, details={"already_applied": True})
            logger.info("payment_failed reference=%s message=%s", txn.reference, gateway.message)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, "Payment failed", value=txn)
        return ServiceResult(ok=True, value=txn, details={"gateway_status": gateway.status})

    def _apply_success(self, txn: Transaction, gateway: PaymentVerifyResult) -> ServiceResult:
        reference = txn.reference
        if not same_amount(gateway.amount, txn.amount):
            logger.warning(
                "payment_amount_mismatch reference=%s expected=%s gateway=%s",
                reference,
                txn.amount,
                gateway.amount,
            )
            log_event(
                "payment_amount_mismatch",
                subject_type="transaction",
                subject_id=txn.id,
                severity="WARN",
                idempotency_key=f"payment_amount_mismatch:{reference}",
                metadata={"reference": reference, "expected": txn.amount, "gateway_amount": gateway.amount},
                commit=True,
            )

        order = self.session.get(Order, int(txn.order_id)) if txn.order_id is not None else None
        anomaly = ""
        try:
            meta = txn.meta()
            meta.gateway_amount = float(gateway.amount)
            meta.gateway_message = gateway.message or None
            flipped = ledger.compare_and_set(
                self.session,
                Transaction,
                txn.id,
                field="status",
                expected=TransactionStatus.PENDING,
                values={
                    "status": TransactionStatus.SUCCESSFUL,
                    "gateway_reference": gateway.gateway_reference or None,
                    "metadata_json": meta.to_json(),
                },
            )
            if not flipped:
                raise UnitAborted(ServiceResult(ok=True, value=txn, details={"already_applied": True}))

            credited = 0.0
            if order is not None:
                paid = ledger.compare_and_set(
                    self.session,
                    Order,
                    order.id,
                    field="payment_status",
                    expected=PaymentStatus.PENDING,
                    values={"payment_status": PaymentStatus.PAID, "payment_reference": reference},
                )
                if paid and not bool(order.is_cancelled):
                    ledger.compare_and_set(
                        self.session,
                        Order,
                        order.id,
                        field="order_status",
                        expected=OrderStatus.RECEIVED,
                        values={
                            "order_status": OrderStatus.PROCESSING,
                            "notes": append_note(order.notes, f"Payment {reference} confirmed"),
                        },
                    )
                    credited = float(order.vendor_earning or 0.0)
                    if credited > 0:
                        ledger.credit_earnings(self.session, user_type="VENDOR", user_id=order.vendor_id, amount=credited)
                elif paid:
                    anomaly = "payment_on_cancelled_order"
                else:
                    anomaly = "duplicate_payment"

            meta.vendor_credit = credited
            ledger.compare_and_set(
                self.session,
                Transaction,
                txn.id,
                field="status",
                expected=TransactionStatus.SUCCESSFUL,
                values={"metadata_json": meta.to_json()},
            )

            log_action(
                self.session,
                "PAYMENT_VERIFIED",
                "TRANSACTION",
                txn.id,
                details={
                    "reference": reference,
                    "order_id": txn.order_id,
                    "amount": txn.amount,
                    "gateway_amount": gateway.amount,
                    "vendor_credit": credited,
                },
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            logger.info("payment_already_applied reference=%s", reference)
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("payment_apply_failed reference=%s", reference)
            return ServiceResult.internal()

        logger.info("payment_verified reference=%s order_id=%s vendor_credit=%s", reference, txn.order_id, credited)
        if anomaly:
            logger.error("payment_anomaly kind=%s reference=%s order_id=%s", anomaly, reference, txn.order_id)
            log_event(
                anomaly,
                subject_type="order",
                subject_id=txn.order_id,
                severity="ALERT",
                idempotency_key=f"{anomaly}:{reference}",
                metadata={"reference": reference, "amount": txn.amount},
                commit=True,
            )
        return ServiceResult.success(txn)

    # ------------------------------------------------------------------
    # webhook
    # ------------------------------------------------------------------

    def handle_payment_webhook(self, raw_body: bytes | None, signature: str | None, payload) -> ServiceResult:
        """Process one charge callback.

        Only a bad signature is reported as a failure. Everything else is
        acknowledged; the ack's own ``ok`` flag says whether processing worked.
        """
        if not verify_signature(self.config, signature):
            logger.warning("payment_webhook_rejected reason=bad_signature")
            return ServiceResult.failure(ErrorKind.UNAUTHORIZED, "Invalid webhook signature")

        event = parse_webhook_event(payload)
        if event is None:
            logger.info("payment_webhook_ignored reason=unparseable")
            return ServiceResult.success({"ok": True, "ignored": True})

        try:
            row = record_delivery(self.session, provider=WEBHOOK_PROVIDER, event=event, raw_body=raw_body)
        except Exception:
            self.session.rollback()
            logger.exception("payment_webhook_log_failed event_id=%s", event.event_id)
            return ServiceResult.success({"ok": False, "error": "WEBHOOK_LOG_FAILED"})

        if event.event != "charge.completed" or not event.reference:
            finish_delivery(self.session, row, status=WebhookStatus.IGNORED)
            return ServiceResult.success({"ok": True, "ignored": True, "event": event.event})

        result = self.verify_payment(transaction_id=event.gateway_id or None, reference=event.reference)
        txn = result.value if isinstance(result.value, Transaction) else None
        if result.ok or txn is not None:
            finish_delivery(self.session, row, status=WebhookStatus.PROCESSED)
            return ServiceResult.success(
                {
                    "ok": True,
                    "event": event.event,
                    "reference": event.reference,
                    "transaction_status": txn.status if txn is not None else None,
                }
            )
        if result.error == ErrorKind.NOT_FOUND:
            finish_delivery(self.session, row, status=WebhookStatus.IGNORED, error=result.message)
            return ServiceResult.success({"ok": True, "ignored": True, "reference": event.reference})

        logger.warning("payment_webhook_processing_failed reference=%s error=%s", event.reference, result.error)
        finish_delivery(self.session, row, status=WebhookStatus.FAILED, error=f"{result.error}: {result.message}")
        return ServiceResult.success({"ok": False, "error": result.error, "reference": event.reference})

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    def request_refund(
        self,
        order_id: int,
        transaction_id: int,
        amount,
        reason: str,
        *,
        requested_by: int | None = None,
    ) -> ServiceResult:
        try:
            amount = money_float(amount)
        except (TypeError, ValueError):
            amount = 0.0
        if amount <= 0:
            return ServiceResult.failure(ErrorKind.VALIDATION, "Refund amount must be greater than zero")
        reason = (reason or "").strip()
        if not reason:
            return ServiceResult.failure(ErrorKind.VALIDATION, "A refund reason is required")

        try:
            order = self.session.query(Order).filter(Order.id == int(order_id)).with_for_update().first()
            if order is None:
                raise UnitAborted(ServiceResult.failure(ErrorKind.NOT_FOUND, "Order not found"))
            if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED):
                raise UnitAborted(
                    ServiceResult.failure(
                        ErrorKind.CONFLICT,
                        f"Order payment is {order.payment_status}; only paid orders can be refunded",
                        payment_status=order.payment_status,
                    )
                )
            txn = self.session.get(Transaction, int(transaction_id))
            if txn is None:
                raise UnitAborted(ServiceResult.failure(ErrorKind.NOT_FOUND, "Transaction not found"))
            if (
                txn.type != TransactionType.PAYMENT
                or txn.status != TransactionStatus.SUCCESSFUL
                or int(txn.order_id or 0) != int(order.id)
            ):
                raise UnitAborted(
                    ServiceResult.failure(ErrorKind.VALIDATION, "Transaction is not a successful payment for this order")
                )
            if not ledger.reserve_refund(self.session, order_id=order.id, amount=amount):
                remaining = money_float(float(order.total) - float(order.refunded_amount or 0.0))
                raise UnitAborted(
                    ServiceResult.failure(
                        ErrorKind.VALIDATION,
                        f"Refund exceeds the refundable balance of {remaining}",
                        remaining=remaining,
                    )
                )

            refund = Refund(
                order_id=int(order.id),
                transaction_id=int(txn.id),
                amount=amount,
                reason=reason,
                status=RefundStatus.PENDING,
                requested_by_id=int(requested_by) if requested_by is not None else None,
            )
            self.session.add(refund)
            self.session.flush()

            order.payment_status = _payment_status_after_refunds(order.total, order.refunded_amount)
            log_action(
                self.session,
                "REFUND_REQUESTED",
                "REFUND",
                refund.id,
                performed_by=requested_by,
                details={"order_id": order.id, "amount": amount, "reason": reason},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("refund_request_failed order_id=%s", order_id)
            return ServiceResult.internal()

        logger.info("refund_requested refund_id=%s order_id=%s amount=%s", refund.id, order_id, amount)
        return ServiceResult.success(refund)

    def process_refund(self, refund_id: int, admin_id: int, action: str, *, notes: str | None = None) -> ServiceResult:
        action = (action or "").strip().upper()
        if action not in ReviewAction.ALL:
            return ServiceResult.failure(ErrorKind.VALIDATION, "action must be APPROVE or REJECT")
        refund = self.session.get(Refund, int(refund_id))
        if refund is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Refund not found")
        if refund.status != RefundStatus.PENDING:
            return ServiceResult.failure(
                ErrorKind.CONFLICT,
                f"Refund is already {refund.status}",
                refund_status=refund.status,
            )
        notes = (notes or "").strip() or None
        if action == ReviewAction.REJECT:
            return self._reject_refund(refund, admin_id, notes)
        return self._approve_refund(refund, admin_id, notes)

    def _reject_refund(self, refund: Refund, admin_id: int, notes: str | None) -> ServiceResult:
        try:
            moved = ledger.compare_and_set(
                self.session,
                Refund,
                refund.id,
                field="status",
                expected=RefundStatus.PENDING,
                values={
                    "status": RefundStatus.REJECTED,
                    "approved_by_id": int(admin_id),
                    "processed_at": datetime.utcnow(),
                    "notes": notes,
                },
            )
            if not moved:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Refund changed by another request"))
            ledger.release_refund(self.session, order_id=refund.order_id, amount=refund.amount)
            order = self.session.get(Order, int(refund.order_id))
            order.payment_status = _payment_status_after_refunds(order.total, order.refunded_amount)
            log_action(
                self.session,
                "REFUND_REJECTED",
                "REFUND",
                refund.id,
                performed_by=admin_id,
                details={"order_id": refund.order_id, "amount": refund.amount, "notes": notes},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("refund_reject_failed refund_id=%s", refund.id)
            return ServiceResult.internal()
        logger.info("refund_rejected refund_id=%s", refund.id)
        return ServiceResult.success(refund)

    def _revert_approval(self, refund: Refund) -> None:
        try:
            ledger.compare_and_set(
                self.session,
                Refund,
                refund.id,
                field="status",
                expected=RefundStatus.APPROVED,
                values={"status": RefundStatus.PENDING, "approved_by_id": None},
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("refund_revert_failed refund_id=%s", refund.id)

    def _approve_refund(self, refund: Refund, admin_id: int, notes: str | None) -> ServiceResult:
        try:
            claimed = ledger.compare_and_set(
                self.session,
                Refund,
                refund.id,
                field="status",
                expected=RefundStatus.PENDING,
                values={"status": RefundStatus.APPROVED, "approved_by_id": int(admin_id)},
            )
            if not claimed:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Refund changed by another request"))
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("refund_approve_failed refund_id=%s", refund.id)
            return ServiceResult.internal()

        payment = self.session.get(Transaction, int(refund.transaction_id))
        try:
            outcome = self.provider.refund(
                gateway_reference=payment.gateway_reference or payment.reference,
                amount=float(refund.amount),
            )
        except Exception as e:
            if isinstance(e, GatewayError):
                logger.warning("refund_gateway_error refund_id=%s code=%s", refund.id, e.code)
            else:
                logger.exception("refund_gateway_error refund_id=%s", refund.id)
            self._revert_approval(refund)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, "Payment gateway could not process the refund", value=refund)
        if outcome.status == GatewayStatus.FAILED:
            logger.warning("refund_gateway_declined refund_id=%s message=%s", refund.id, outcome.message)
            self._revert_approval(refund)
            return ServiceResult.failure(
                ErrorKind.UPSTREAM_FAILURE,
                f"Refund declined by gateway: {outcome.message or 'no reason given'}",
                value=refund,
            )

        order = self.session.get(Order, int(refund.order_id))
        try:
            refund_txn = Transaction(
                reference=unique_value(lambda: generate_reference("RFD"), self._reference_taken),
                type=TransactionType.REFUND,
                amount=float(refund.amount),
                fee=0.0,
                currency=payment.currency or "NGN",
                status=TransactionStatus.SUCCESSFUL,
                payment_method=payment.payment_method,
                gateway_reference=outcome.gateway_reference or None,
                order_id=int(order.id),
                customer_id=int(order.customer_id),
                vendor_id=int(order.vendor_id),
            )
            refund_txn.set_meta(
                TransactionMetadata(
                    order_number=order.order_number,
                    refund_id=int(refund.id),
                    provider=self.provider.name,
                    gateway_message=outcome.message or None,
                )
            )
            self.session.add(refund_txn)
            self.session.flush()
            settled = ledger.compare_and_set(
                self.session,
                Refund,
                refund.id,
                field="status",
                expected=RefundStatus.APPROVED,
                values={
                    "status": RefundStatus.PROCESSED,
                    "refund_transaction_id": int(refund_txn.id),
                    "processed_at": datetime.utcnow(),
                    "gateway_reference": outcome.gateway_reference or None,
                    "notes": notes,
                },
            )
            if not settled:
                raise RuntimeError("refund_status_changed")
            log_action(
                self.session,
                "REFUND_PROCESSED",
                "REFUND",
                refund.id,
                performed_by=admin_id,
                details={"order_id": order.id, "amount": refund.amount, "refund_reference": refund_txn.reference},
            )
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.exception("refund_settlement_failed refund_id=%s", refund.id)
            log_event(
                "refund_settlement_failed",
                actor_user_id=admin_id,
                subject_type="refund",
                subject_id=refund.id,
                severity="ALERT",
                metadata={"gateway_reference": outcome.gateway_reference, "error": type(e).__name__},
                commit=True,
            )
            return ServiceResult.internal()

        logger.info("refund_processed refund_id=%s amount=%s", refund.id, refund.amount)
        return ServiceResult.success(refund)

    # ------------------------------------------------------------------
    # history
    # ------------------------------------------------------------------

    def transaction_history(
        self,
        *,
        type: str | None = None,
        status: str | None = None,
        order_id: int | None = None,
        customer_id: int | None = None,
        vendor_id: int | None = None,
        driver_id: int | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ServiceResult:
        q = self.session.query(Transaction)
        if type:
            wanted = type.strip().upper()
            if wanted not in TransactionType.ALL:
                return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown transaction type {type}")
            q = q.filter(Transaction.type == wanted)
        if status:
            wanted = status.strip().upper()
            if wanted not in TransactionStatus.ALL:
                return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown transaction status {status}")
            q = q.filter(Transaction.status == wanted)
        if order_id is not None:
            q = q.filter(Transaction.order_id == int(order_id))
        if customer_id is not None:
            q = q.filter(Transaction.customer_id == int(customer_id))
        if vendor_id is not None:
            q = q.filter(Transaction.vendor_id == int(vendor_id))
        if driver_id is not None:
            q = q.filter(Transaction.driver_id == int(driver_id))
        limit = max(1, min(int(limit or 20), MAX_PAGE_SIZE))
        offset = max(0, int(offset or 0))
        total = q.count()
        rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).offset(offset).all()
        return ServiceResult.success({"items": rows, "total": total, "limit": limit, "offset": offset})
