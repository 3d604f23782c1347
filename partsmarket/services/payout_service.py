from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from partsmarket.integrations.common import GatewayError
from partsmarket.integrations.payments.base import GatewayStatus
from partsmarket.integrations.payments.flutterwave_provider import parse_webhook_event
from partsmarket.models import (
    BankSnapshot,
    PayoutRequest,
    RequestedEarnings,
    Transaction,
    TransactionMetadata,
)
from partsmarket.services import ledger, pricing
from partsmarket.services.payment_service import ReviewAction, TransactionStatus, TransactionType
from partsmarket.services.results import ErrorKind, ServiceResult, UnitAborted
from partsmarket.services.webhook_intake import WebhookStatus, finish_delivery, record_delivery, verify_signature
from partsmarket.utils.audit import log_action
from partsmarket.utils.events import log_event
from partsmarket.utils.money import money_float
from partsmarket.utils.references import generate_reference, unique_value

logger = logging.getLogger(__name__)

DEFAULT_MIN_PAYOUT = 1000.0
MAX_PAGE_SIZE = 100
WEBHOOK_PROVIDER = "flutterwave"

BANK_CODES = {
    "ACCESS BANK": "044",
    "FIRST BANK": "011",
    "GTB": "058",
    "GTBANK": "058",
    "ZENITH BANK": "057",
    "UBA": "033",
    "STANDARD CHARTERED": "068",
}
UNKNOWN_BANK_CODE = "000"


def resolve_bank_code(bank_name: str | None) -> str:
    """Exact name match first, then the first table entry contained in the name."""
    name = (bank_name or "").strip().upper()
    if not name:
        return UNKNOWN_BANK_CODE
    if name in BANK_CODES:
        return BANK_CODES[name]
    for known, code in BANK_CODES.items():
        if known in name:
            return code
    return UNKNOWN_BANK_CODE


class PayoutStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"

    ALL = {PENDING, APPROVED, PROCESSED, REJECTED}
    # APPROVED requests have a transfer in flight until the gateway settles it.
    OUTSTANDING = (PENDING, APPROVED)


class PayoutService:
    """Withdrawal requests for vendors and drivers.

    Approval holds the amount in ``reserved_payout``. The hold becomes
    ``total_paid_out`` when the gateway confirms the transfer and is released
    when it fails, always through the guarded ledger updates, so paid-out plus
    reserved can never exceed ``total_earnings``.
    """

    def __init__(self, session, *, provider, config=None):
        self.session = session
        self.provider = provider
        self.config = config or {}

    @property
    def min_payout(self) -> float:
        try:
            return float(self.config.get("MIN_PAYOUT_AMOUNT", DEFAULT_MIN_PAYOUT))
        except (TypeError, ValueError):
            return DEFAULT_MIN_PAYOUT

    def _payee(self, user_type: str, user_id: int):
        model = ledger.PAYEE_MODELS.get(user_type)
        if model is None:
            return None
        return self.session.get(model, int(user_id))

    def _outstanding_request(self, user_type: str, user_id: int) -> PayoutRequest | None:
        return (
            self.session.query(PayoutRequest)
            .filter(
                PayoutRequest.user_id == int(user_id),
                PayoutRequest.user_type == user_type,
                PayoutRequest.status.in_(PayoutStatus.OUTSTANDING),
            )
            .first()
        )

    def _reference_taken(self, value: str) -> bool:
        return self.session.query(Transaction.id).filter(Transaction.reference == value).first() is not None

    def request_payout(self, user_id: int, user_type: str, amount, *, requested_by: int | None = None) -> ServiceResult:
        user_type = (user_type or "").strip().upper()
        if user_type not in ledger.PAYEE_MODELS:
            return ServiceResult.failure(ErrorKind.VALIDATION, "user_type must be VENDOR or DRIVER")
        try:
            amount = money_float(amount)
        except (TypeError, ValueError):
            amount = 0.0
        if amount <= 0:
            return ServiceResult.failure(ErrorKind.VALIDATION, "Payout amount must be greater than zero")
        if amount < self.min_payout:
            return ServiceResult.failure(
                ErrorKind.VALIDATION,
                f"Minimum payout amount is {self.min_payout:g}",
                minimum=self.min_payout,
            )

        payee = self._payee(user_type, user_id)
        if payee is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, f"{user_type.title()} not found")
        if not bool(payee.is_payout_enabled):
            return ServiceResult.failure(ErrorKind.VALIDATION, "Payouts are disabled for this account")
        if not payee.has_bank_details():
            return ServiceResult.failure(ErrorKind.VALIDATION, "Bank details are incomplete")
        if self._outstanding_request(user_type, payee.id) is not None:
            return ServiceResult.failure(ErrorKind.CONFLICT, "A payout request is already in progress")
        unpaid = payee.unpaid_amount()
        available = payee.available_amount()
        if amount > available + ledger.BALANCE_TOLERANCE:
            return ServiceResult.failure(
                ErrorKind.VALIDATION,
                f"Requested amount exceeds available balance of {available}",
                available=available,
            )

        bank = BankSnapshot(
            bank_name=payee.bank_name or "",
            bank_account_name=payee.bank_account_name or "",
            bank_account_number=payee.bank_account_number or "",
            bank_code=resolve_bank_code(payee.bank_name),
        )
        earnings = RequestedEarnings(
            total_earnings=float(payee.total_earnings or 0.0),
            total_paid_out=float(payee.total_paid_out or 0.0),
            unpaid_amount=unpaid,
            requested_amount=amount,
        )
        try:
            row = PayoutRequest(
                user_id=int(payee.id),
                user_type=user_type,
                amount=amount,
                status=PayoutStatus.PENDING,
                bank_details_json=bank.to_json(),
                requested_earnings_json=earnings.to_json(),
                requested_by_id=int(requested_by) if requested_by is not None else None,
            )
            self.session.add(row)
            self.session.flush()
            log_action(
                self.session,
                "PAYOUT_REQUESTED",
                "PAYOUT_REQUEST",
                row.id,
                performed_by=requested_by,
                details={"user_type": user_type, "user_id": payee.id, "amount": amount, "unpaid": unpaid},
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info("payout_request_conflict user_type=%s user_id=%s", user_type, user_id)
            return ServiceResult.failure(ErrorKind.CONFLICT, "A payout request is already in progress")
        except Exception:
            self.session.rollback()
            logger.exception("payout_request_failed user_type=%s user_id=%s", user_type, user_id)
            return ServiceResult.internal()

        logger.info("payout_requested request_id=%s user_type=%s user_id=%s amount=%s", row.id, user_type, payee.id, amount)
        return ServiceResult.success(row)

    def process_payout_request(
        self,
        payout_request_id: int,
        action: str,
        admin_id: int,
        *,
        notes: str | None = None,
    ) -> ServiceResult:
        action = (action or "").strip().upper()
        if action not in ReviewAction.ALL:
            return ServiceResult.failure(ErrorKind.VALIDATION, "action must be APPROVE or REJECT")
        row = self.session.get(PayoutRequest, int(payout_request_id))
        if row is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, "Payout request not found")
        if row.status != PayoutStatus.PENDING:
            return ServiceResult.failure(
                ErrorKind.CONFLICT,
                f"Payout request is already {row.status}",
                request_status=row.status,
            )
        notes = (notes or "").strip() or None
        if action == ReviewAction.REJECT:
            return self._reject(row, admin_id, notes)
        return self._approve(row, admin_id, notes)

    def _reject(self, row: PayoutRequest, admin_id: int, notes: str | None) -> ServiceResult:
        try:
            moved = ledger.compare_and_set(
                self.session,
                PayoutRequest,
                row.id,
                field="status",
                expected=PayoutStatus.PENDING,
                values={
                    "status": PayoutStatus.REJECTED,
                    "processed_by_id": int(admin_id),
                    "processed_at": datetime.utcnow(),
                    "notes": notes,
                },
            )
            if not moved:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Payout request changed by another request"))
            log_action(
                self.session,
                "PAYOUT_REJECTED",
                "PAYOUT_REQUEST",
                row.id,
                performed_by=admin_id,
                details={"amount": row.amount, "notes": notes},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("payout_reject_failed request_id=%s", row.id)
            return ServiceResult.internal()
        logger.info("payout_rejected request_id=%s", row.id)
        return ServiceResult.success(row)

    def _approve(self, row: PayoutRequest, admin_id: int, notes: str | None) -> ServiceResult:
        payee = self._payee(row.user_type, row.user_id)
        if payee is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, f"{row.user_type.title()} not found")
        bank = row.bank_details()
        if not bank.bank_code:
            bank.bank_code = resolve_bank_code(bank.bank_name)

        try:
            if not ledger.reserve_payout(
                self.session,
                user_type=row.user_type,
                user_id=row.user_id,
                amount=float(row.amount),
            ):
                raise UnitAborted(
                    ServiceResult.failure(
                        ErrorKind.VALIDATION,
                        "Requested amount exceeds available balance",
                        available=payee.available_amount(),
                    )
                )
            claimed = ledger.compare_and_set(
                self.session,
                PayoutRequest,
                row.id,
                field="status",
                expected=PayoutStatus.PENDING,
                values={"status": PayoutStatus.APPROVED, "processed_by_id": int(admin_id), "notes": notes},
            )
            if not claimed:
                raise UnitAborted(ServiceResult.failure(ErrorKind.CONFLICT, "Payout request changed by another request"))
            txn = Transaction(
                reference=unique_value(lambda: generate_reference("POUT"), self._reference_taken),
                type=TransactionType.PAYOUT,
                amount=float(row.amount),
                fee=pricing.payout_fee(row.amount),
                currency=self.config.get("PAYMENT_CURRENCY") or "NGN",
                status=TransactionStatus.PENDING,
                payment_method="BANK_TRANSFER",
                vendor_id=int(row.user_id) if row.user_type == "VENDOR" else None,
                driver_id=int(row.user_id) if row.user_type == "DRIVER" else None,
            )
            txn.set_meta(
                TransactionMetadata(
                    payout_request_id=int(row.id),
                    user_type=row.user_type,
                    provider=self.provider.name,
                    bank_name=bank.bank_name,
                    bank_account_number=bank.bank_account_number,
                    bank_code=bank.bank_code,
                )
            )
            self.session.add(txn)
            self.session.flush()
            ledger.compare_and_set(
                self.session,
                PayoutRequest,
                row.id,
                field="status",
                expected=PayoutStatus.APPROVED,
                values={"transaction_id": int(txn.id)},
            )
            log_action(
                self.session,
                "PAYOUT_APPROVED",
                "PAYOUT_REQUEST",
                row.id,
                performed_by=admin_id,
                details={"amount": row.amount, "reference": txn.reference},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("payout_approve_failed request_id=%s", row.id)
            return ServiceResult.internal()

        try:
            transfer = self.provider.transfer(
                amount=float(txn.amount),
                currency=txn.currency,
                bank_code=bank.bank_code,
                account_number=bank.bank_account_number,
                reference=txn.reference,
                narration=f"Payout {txn.reference}",
            )
        except Exception as e:
            if isinstance(e, GatewayError):
                logger.warning("payout_transfer_error request_id=%s code=%s", row.id, e.code)
                reason = e.detail or e.code
            else:
                logger.exception("payout_transfer_error request_id=%s", row.id)
                reason = type(e).__name__
            self._fail_transfer(txn, reason, actor_id=admin_id)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, f"Transfer failed: {reason}", value=row)

        if transfer.status == GatewayStatus.FAILED:
            reason = transfer.message or "declined"
            self._fail_transfer(txn, reason, actor_id=admin_id)
            return ServiceResult.failure(ErrorKind.UPSTREAM_FAILURE, f"Transfer failed: {reason}", value=row)
        if transfer.status == GatewayStatus.PENDING:
            if transfer.gateway_reference:
                txn.gateway_reference = transfer.gateway_reference
                self.session.commit()
            logger.info("payout_transfer_queued request_id=%s reference=%s", row.id, txn.reference)
            return ServiceResult(ok=True, value=row, details={"transfer_status": transfer.status})

        settled = self._settle(txn, gateway_reference=transfer.gateway_reference, actor_id=admin_id)
        if not settled.ok:
            return settled
        return ServiceResult.success(row)

    def _settle(self, txn: Transaction, *, gateway_reference: str = "", actor_id: int | None = None) -> ServiceResult:
        """Book a confirmed transfer: txn SUCCESSFUL, request PROCESSED, paid-out counter moved."""
        meta = txn.meta()
        request_id = meta.payout_request_id
        user_type = meta.user_type or ("VENDOR" if txn.vendor_id is not None else "DRIVER")
        payee_id = txn.vendor_id if user_type == "VENDOR" else txn.driver_id
        now = datetime.utcnow()
        try:
            values = {"status": TransactionStatus.SUCCESSFUL}
            if gateway_reference:
                values["gateway_reference"] = gateway_reference
            flipped = ledger.compare_and_set(
                self.session,
                Transaction,
                txn.id,
                field="status",
                expected=TransactionStatus.PENDING,
                values=values,
            )
            if not flipped:
                raise UnitAborted(ServiceResult(ok=True, value=txn, details={"already_applied": True}))
            if request_id is not None:
                ledger.compare_and_set(
                    self.session,
                    PayoutRequest,
                    request_id,
                    field="status",
                    expected=PayoutStatus.APPROVED,
                    values={"status": PayoutStatus.PROCESSED, "processed_at": now},
                )
            if not ledger.record_payout(
                self.session,
                user_type=user_type,
                user_id=payee_id,
                amount=float(txn.amount),
                paid_at=now,
                from_reserved=request_id is not None,
            ):
                raise UnitAborted(ServiceResult.internal())
            log_action(
                self.session,
                "PAYOUT_PROCESSED",
                "PAYOUT_REQUEST",
                request_id if request_id is not None else txn.id,
                performed_by=actor_id,
                details={"reference": txn.reference, "amount": txn.amount, "user_type": user_type, "user_id": payee_id},
            )
            self.session.commit()
        except UnitAborted as aborted:
            self.session.rollback()
            if aborted.result.ok:
                return aborted.result
            logger.error(
                "payout_settlement_overdraw reference=%s user_type=%s user_id=%s amount=%s",
                txn.reference,
                user_type,
                payee_id,
                txn.amount,
            )
            log_event(
                "payout_settlement_overdraw",
                actor_user_id=actor_id,
                subject_type=user_type.lower(),
                subject_id=payee_id,
                severity="ALERT",
                idempotency_key=f"payout_settlement_overdraw:{txn.reference}",
                metadata={"reference": txn.reference, "amount": txn.amount, "payout_request_id": request_id},
                commit=True,
            )
            return aborted.result
        except Exception:
            self.session.rollback()
            logger.exception("payout_settlement_failed reference=%s", txn.reference)
            return ServiceResult.internal()

        logger.info("payout_settled reference=%s user_type=%s user_id=%s amount=%s", txn.reference, user_type, payee_id, txn.amount)
        return ServiceResult.success(txn)

    def _fail_transfer(self, txn: Transaction, reason: str, *, actor_id: int | None = None) -> bool:
        meta = txn.meta()
        request_id = meta.payout_request_id
        user_type = meta.user_type or ("VENDOR" if txn.vendor_id is not None else "DRIVER")
        payee_id = txn.vendor_id if user_type == "VENDOR" else txn.driver_id
        try:
            flipped = ledger.compare_and_set(
                self.session,
                Transaction,
                txn.id,
                field="status",
                expected=TransactionStatus.PENDING,
                values={"status": TransactionStatus.FAILED},
            )
            if not flipped:
                self.session.rollback()
                return False
            if request_id is not None:
                rejected = ledger.compare_and_set(
                    self.session,
                    PayoutRequest,
                    request_id,
                    field="status",
                    expected=PayoutStatus.APPROVED,
                    values={
                        "status": PayoutStatus.REJECTED,
                        "processed_at": datetime.utcnow(),
                        "notes": f"Transfer failed: {reason}"[:500],
                    },
                )
                if rejected and not ledger.release_payout(
                    self.session,
                    user_type=user_type,
                    user_id=payee_id,
                    amount=float(txn.amount),
                ):
                    logger.error("payout_release_missing reference=%s user_type=%s user_id=%s", txn.reference, user_type, payee_id)
            log_action(
                self.session,
                "PAYOUT_FAILED",
                "PAYOUT_REQUEST",
                request_id if request_id is not None else txn.id,
                performed_by=actor_id,
                details={"reference": txn.reference, "reason": reason},
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("payout_fail_mark_error reference=%s", txn.reference)
            return False
        logger.info("payout_transfer_failed reference=%s reason=%s", txn.reference, reason)
        return True

    def handle_transfer_webhook(self, raw_body: bytes | None, signature: str | None, payload) -> ServiceResult:
        if not verify_signature(self.config, signature):
            logger.warning("transfer_webhook_rejected reason=bad_signature")
            return ServiceResult.failure(ErrorKind.UNAUTHORIZED, "Invalid webhook signature")

        event = parse_webhook_event(payload)
        if event is None:
            return ServiceResult.success({"ok": True, "ignored": True})
        try:
            delivery = record_delivery(self.session, provider=WEBHOOK_PROVIDER, event=event, raw_body=raw_body)
        except Exception:
            self.session.rollback()
            logger.exception("transfer_webhook_log_failed event_id=%s", event.event_id)
            return ServiceResult.success({"ok": False, "error": "WEBHOOK_LOG_FAILED"})

        if event.event != "transfer.completed" or not event.reference:
            finish_delivery(self.session, delivery, status=WebhookStatus.IGNORED)
            return ServiceResult.success({"ok": True, "ignored": True, "event": event.event})

        txn = (
            self.session.query(Transaction)
            .filter_by(reference=event.reference, type=TransactionType.PAYOUT)
            .first()
        )
        if txn is None:
            logger.info("transfer_webhook_unknown_reference reference=%s", event.reference)
            finish_delivery(self.session, delivery, status=WebhookStatus.IGNORED, error="unknown reference")
            return ServiceResult.success({"ok": True, "ignored": True, "reference": event.reference})

        ack = {"ok": True, "event": event.event, "reference": event.reference}
        if txn.status != TransactionStatus.PENDING:
            if txn.status == TransactionStatus.SUCCESSFUL and event.status == GatewayStatus.FAILED:
                logger.error("transfer_reversed_after_success reference=%s", txn.reference)
                log_event(
                    "transfer_reversed_after_success",
                    subject_type="transaction",
                    subject_id=txn.id,
                    severity="ALERT",
                    idempotency_key=f"transfer_reversed_after_success:{txn.reference}",
                    metadata={"reference": txn.reference, "amount": txn.amount, "message": event.message},
                    commit=True,
                )
                ack["alert"] = True
            finish_delivery(self.session, delivery, status=WebhookStatus.PROCESSED)
            ack["transaction_status"] = txn.status
            return ServiceResult.success(ack)

        if event.status == GatewayStatus.SUCCESSFUL:
            result = self._settle(txn, gateway_reference=event.gateway_id)
            if not result.ok:
                finish_delivery(self.session, delivery, status=WebhookStatus.FAILED, error=f"{result.error}: {result.message}")
                return ServiceResult.success({"ok": False, "error": result.error, "reference": event.reference})
        elif event.status == GatewayStatus.FAILED:
            self._fail_transfer(txn, event.message or "reported failed by gateway")
        self.session.refresh(txn)
        finish_delivery(self.session, delivery, status=WebhookStatus.PROCESSED)
        ack["transaction_status"] = txn.status
        return ServiceResult.success(ack)

    def available_balance(self, user_id: int, user_type: str) -> ServiceResult:
        user_type = (user_type or "").strip().upper()
        if user_type not in ledger.PAYEE_MODELS:
            return ServiceResult.failure(ErrorKind.VALIDATION, "user_type must be VENDOR or DRIVER")
        payee = self._payee(user_type, user_id)
        if payee is None:
            return ServiceResult.failure(ErrorKind.NOT_FOUND, f"{user_type.title()} not found")
        pending = self._outstanding_request(user_type, payee.id)
        available = payee.available_amount()
        return ServiceResult.success(
            {
                "user_id": int(payee.id),
                "user_type": user_type,
                "total_earnings": float(payee.total_earnings or 0.0),
                "total_paid_out": float(payee.total_paid_out or 0.0),
                "reserved_payout": float(payee.reserved_payout or 0.0),
                "available_balance": available,
                "minimum_payout": self.min_payout,
                "pending_request": pending.to_dict() if pending is not None else None,
                "has_bank_details": payee.has_bank_details(),
                "can_request_payout": bool(
                    available >= self.min_payout
                    and pending is None
                    and payee.has_bank_details()
                    and payee.is_payout_enabled
                ),
            }
        )

    def list_payout_requests(
        self,
        *,
        user_id: int | None = None,
        user_type: str | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> ServiceResult:
        q = self.session.query(PayoutRequest)
        if user_type:
            q = q.filter(PayoutRequest.user_type == user_type.strip().upper())
        if user_id is not None:
            q = q.filter(PayoutRequest.user_id == int(user_id))
        if status:
            wanted = status.strip().upper()
            if wanted not in PayoutStatus.ALL:
                return ServiceResult.failure(ErrorKind.VALIDATION, f"Unknown payout status {status}")
            q = q.filter(PayoutRequest.status == wanted)
        limit = max(1, min(int(limit or 20), MAX_PAGE_SIZE))
        offset = max(0, int(offset or 0))
        total = q.count()
        rows = q.order_by(PayoutRequest.created_at.desc(), PayoutRequest.id.desc()).limit(limit).offset(offset).all()
        return ServiceResult.success({"items": rows, "total": total, "limit": limit, "offset": offset})
