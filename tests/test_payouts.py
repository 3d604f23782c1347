from __future__ import annotations

import unittest
from unittest import mock

from sqlalchemy.exc import IntegrityError

from partsmarket.extensions import db
from partsmarket.integrations.common import GatewayError
from partsmarket.integrations.payments.base import GatewayStatus
from partsmarket.models import Driver, PayoutRequest, Transaction, Vendor
from partsmarket.services import ledger
from partsmarket.services.payment_service import TransactionStatus, TransactionType
from partsmarket.services.payout_service import PayoutService, PayoutStatus, resolve_bank_code
from partsmarket.services.results import ErrorKind
from tests.support import AppTestCase, ScriptedProvider, make_admin, make_driver, make_vendor

WEBHOOK_SECRET = "whsec-test"


class PayoutTestCase(AppTestCase):
    CONFIG = {"FLUTTERWAVE_SECRET_HASH": WEBHOOK_SECRET, "MIN_PAYOUT_AMOUNT": 1000}

    def _service(self, provider=None):
        return PayoutService(db.session, provider=provider or ScriptedProvider(), config=self.app.config)

    def _requested(self, service, *, earnings=5000.0, amount=3000.0):
        vendor = make_vendor(earnings=earnings)
        result = service.request_payout(vendor.id, "vendor", amount, requested_by=vendor.user_id)
        self.assertTrue(result.ok, result.message)
        return vendor.id, result.value.id

    def test_request_validation(self):
        with self.app.app_context():
            service = self._service()
            vendor = make_vendor(earnings=5000.0)

            self.assertEqual(service.request_payout(vendor.id, "ADMIN", 2000).error, ErrorKind.VALIDATION)
            self.assertEqual(service.request_payout(vendor.id, "VENDOR", 0).error, ErrorKind.VALIDATION)
            below = service.request_payout(vendor.id, "VENDOR", 500)
            self.assertEqual(below.error, ErrorKind.VALIDATION)
            self.assertEqual(below.details.get("minimum"), 1000.0)
            over = service.request_payout(vendor.id, "VENDOR", 6000)
            self.assertEqual(over.error, ErrorKind.VALIDATION)
            self.assertEqual(over.details.get("available"), 5000.0)
            self.assertEqual(service.request_payout(999999, "VENDOR", 2000).error, ErrorKind.NOT_FOUND)

            no_bank = make_vendor(earnings=5000.0, bank=False)
            self.assertEqual(service.request_payout(no_bank.id, "VENDOR", 2000).error, ErrorKind.VALIDATION)

            disabled = make_vendor(earnings=5000.0)
            disabled.is_payout_enabled = False
            db.session.commit()
            self.assertEqual(service.request_payout(disabled.id, "VENDOR", 2000).error, ErrorKind.VALIDATION)

            first = service.request_payout(vendor.id, "VENDOR", 2000)
            self.assertTrue(first.ok, first.message)
            self.assertEqual(first.value.bank_details().bank_code, "058")
            self.assertEqual(first.value.requested_earnings().unpaid_amount, 5000.0)
            second = service.request_payout(vendor.id, "VENDOR", 1000)
            self.assertEqual(second.error, ErrorKind.CONFLICT)

    def test_approved_transfer_moves_paid_out_counter(self):
        with self.app.app_context():
            provider = ScriptedProvider()
            service = self._service(provider)
            vendor_id, request_id = self._requested(service)
            admin = make_admin()

            result = service.process_payout_request(request_id, "approve", admin.id, notes="Weekly run")
            self.assertTrue(result.ok, result.message)

            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.PROCESSED)
            self.assertEqual(row.processed_by_id, admin.id)
            self.assertIsNotNone(row.processed_at)

            txn = db.session.get(Transaction, row.transaction_id)
            self.assertEqual(txn.type, TransactionType.PAYOUT)
            self.assertEqual(txn.status, TransactionStatus.SUCCESSFUL)
            self.assertTrue(txn.reference.startswith("POUT-"))
            self.assertEqual(txn.fee, 30.0)
            self.assertEqual(txn.gateway_reference, f"trf-{txn.reference}")
            self.assertEqual(txn.meta().bank_code, "058")
            self.assertIn(("transfer", txn.reference), provider.calls)

            vendor = db.session.get(Vendor, vendor_id)
            self.assertEqual(vendor.total_paid_out, 3000.0)
            self.assertEqual(vendor.unpaid_amount(), 2000.0)
            self.assertIsNotNone(vendor.last_payout_date)

            again = service.process_payout_request(request_id, "APPROVE", admin.id)
            self.assertEqual(again.error, ErrorKind.CONFLICT)

    def test_declined_transfer_rejects_request(self):
        with self.app.app_context():
            service = self._service(ScriptedProvider(transfer_status=GatewayStatus.FAILED))
            vendor_id, request_id = self._requested(service)
            admin = make_admin()

            result = service.process_payout_request(request_id, "APPROVE", admin.id)
            self.assertEqual(result.error, ErrorKind.UPSTREAM_FAILURE)
            self.assertEqual(result.message, "Transfer failed: insufficient float")

            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.REJECTED)
            self.assertEqual(row.notes, "Transfer failed: insufficient float")
            self.assertEqual(db.session.get(Transaction, row.transaction_id).status, TransactionStatus.FAILED)
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 0.0)

    def test_gateway_error_rejects_request(self):
        with self.app.app_context():
            error = GatewayError("TRANSFER_REJECTED", "account frozen")
            service = self._service(ScriptedProvider(transfer_error=error))
            vendor_id, request_id = self._requested(service)

            result = service.process_payout_request(request_id, "APPROVE", make_admin().id)
            self.assertEqual(result.error, ErrorKind.UPSTREAM_FAILURE)
            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.REJECTED)
            self.assertEqual(row.notes, "Transfer failed: account frozen")
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 0.0)

    def test_queued_transfer_is_settled_by_webhook(self):
        with self.app.app_context():
            service = self._service(ScriptedProvider(transfer_status=GatewayStatus.PENDING))
            vendor_id, request_id = self._requested(service)

            result = service.process_payout_request(request_id, "APPROVE", make_admin().id)
            self.assertTrue(result.ok, result.message)
            self.assertEqual(result.details.get("transfer_status"), GatewayStatus.PENDING)
            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.APPROVED)
            txn = db.session.get(Transaction, row.transaction_id)
            self.assertEqual(txn.status, TransactionStatus.PENDING)
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 0.0)

            payload = {
                "event": "transfer.completed",
                "data": {"id": 7001, "reference": txn.reference, "status": "SUCCESSFUL", "amount": 3000},
            }
            bad = service.handle_transfer_webhook(b"{}", "wrong", payload)
            self.assertEqual(bad.error, ErrorKind.UNAUTHORIZED)

            ack = service.handle_transfer_webhook(b"{}", WEBHOOK_SECRET, payload)
            self.assertTrue(ack.ok)
            self.assertEqual(ack.value["transaction_status"], TransactionStatus.SUCCESSFUL)
            self.assertEqual(db.session.get(PayoutRequest, request_id).status, PayoutStatus.PROCESSED)
            self.assertEqual(db.session.get(Transaction, txn.id).gateway_reference, "7001")
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 3000.0)

            replay = service.handle_transfer_webhook(b"{}", WEBHOOK_SECRET, payload)
            self.assertTrue(replay.ok)
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 3000.0)

    def test_failed_transfer_webhook_rejects_queued_request(self):
        with self.app.app_context():
            service = self._service(ScriptedProvider(transfer_status=GatewayStatus.PENDING))
            vendor_id, request_id = self._requested(service)
            service.process_payout_request(request_id, "APPROVE", make_admin().id)
            reference = db.session.get(Transaction, db.session.get(PayoutRequest, request_id).transaction_id).reference

            payload = {
                "event": "transfer.completed",
                "data": {"id": 7002, "reference": reference, "status": "FAILED", "complete_message": "Account closed"},
            }
            ack = service.handle_transfer_webhook(b"{}", WEBHOOK_SECRET, payload)
            self.assertTrue(ack.ok)
            self.assertEqual(ack.value["transaction_status"], TransactionStatus.FAILED)
            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.REJECTED)
            self.assertEqual(row.notes, "Transfer failed: Account closed")
            self.assertEqual(db.session.get(Vendor, vendor_id).total_paid_out, 0.0)

    def test_reject_leaves_balance_untouched(self):
        with self.app.app_context():
            service = self._service()
            vendor_id, request_id = self._requested(service)
            admin = make_admin()

            self.assertEqual(service.process_payout_request(request_id, "later", admin.id).error, ErrorKind.VALIDATION)
            result = service.process_payout_request(request_id, "REJECT", admin.id, notes="Verify bank first")
            self.assertTrue(result.ok, result.message)
            row = db.session.get(PayoutRequest, request_id)
            self.assertEqual(row.status, PayoutStatus.REJECTED)
            self.assertEqual(row.notes, "Verify bank first")
            self.assertIsNone(row.transaction_id)
            self.assertEqual(db.session.get(Vendor, vendor_id).unpaid_amount(), 5000.0)

    def test_in_flight_transfer_holds_the_balance(self):
        with self.app.app_context():
            provider = ScriptedProvider(transfer_status=GatewayStatus.PENDING)
            service = self._service(provider)
            vendor_id, request_id = self._requested(service, earnings=5000.0, amount=5000.0)
            admin = make_admin()

            self.assertTrue(service.process_payout_request(request_id, "APPROVE", admin.id).ok)
            vendor = db.session.get(Vendor, vendor_id)
            self.assertEqual(vendor.reserved_payout, 5000.0)
            self.assertEqual(vendor.total_paid_out, 0.0)
            self.assertEqual(vendor.available_amount(), 0.0)

            again = service.request_payout(vendor_id, "VENDOR", 5000.0)
            self.assertEqual(again.error, ErrorKind.CONFLICT)
            self.assertEqual(PayoutRequest.query.filter_by(user_type="VENDOR", user_id=vendor_id).count(), 1)

            balance = service.available_balance(vendor_id, "VENDOR").value
            self.assertEqual(balance["available_balance"], 0.0)
            self.assertEqual(balance["reserved_payout"], 5000.0)
            self.assertEqual(balance["pending_request"]["status"], PayoutStatus.APPROVED)
            self.assertFalse(balance["can_request_payout"])

            reference = db.session.get(Transaction, db.session.get(PayoutRequest, request_id).transaction_id).reference
            payload = {
                "event": "transfer.completed",
                "data": {"id": 7101, "reference": reference, "status": "SUCCESSFUL", "amount": 5000},
            }
            self.assertTrue(service.handle_transfer_webhook(b"{}", WEBHOOK_SECRET, payload).ok)
            vendor = db.session.get(Vendor, vendor_id)
            self.assertEqual(vendor.total_paid_out, 5000.0)
            self.assertEqual(vendor.reserved_payout, 0.0)

            after = service.request_payout(vendor_id, "VENDOR", 5000.0)
            self.assertEqual(after.error, ErrorKind.VALIDATION)
            self.assertEqual(after.details.get("available"), 0.0)
            self.assertEqual([c for c in provider.calls if c[0] == "transfer"], [("transfer", reference)])

    def test_failed_transfer_releases_the_hold(self):
        with self.app.app_context():
            service = self._service(ScriptedProvider(transfer_status=GatewayStatus.PENDING))
            vendor_id, request_id = self._requested(service, earnings=5000.0, amount=4000.0)
            service.process_payout_request(request_id, "APPROVE", make_admin().id)
            self.assertEqual(db.session.get(Vendor, vendor_id).reserved_payout, 4000.0)

            reference = db.session.get(Transaction, db.session.get(PayoutRequest, request_id).transaction_id).reference
            payload = {
                "event": "transfer.completed",
                "data": {"id": 7102, "reference": reference, "status": "FAILED", "complete_message": "Bank offline"},
            }
            self.assertTrue(service.handle_transfer_webhook(b"{}", WEBHOOK_SECRET, payload).ok)
            vendor = db.session.get(Vendor, vendor_id)
            self.assertEqual(vendor.reserved_payout, 0.0)
            self.assertEqual(vendor.available_amount(), 5000.0)

            retry = service.request_payout(vendor_id, "VENDOR", 5000.0)
            self.assertTrue(retry.ok, retry.message)

    def test_declined_transfer_leaves_nothing_reserved(self):
        with self.app.app_context():
            service = self._service(ScriptedProvider(transfer_status=GatewayStatus.FAILED))
            vendor_id, request_id = self._requested(service)
            service.process_payout_request(request_id, "APPROVE", make_admin().id)
            vendor = db.session.get(Vendor, vendor_id)
            self.assertEqual(vendor.reserved_payout, 0.0)
            self.assertEqual(vendor.available_amount(), 5000.0)

    def test_second_outstanding_request_is_refused_by_the_database(self):
        with self.app.app_context():
            service = self._service()
            vendor_id, _ = self._requested(service, amount=2000.0)

            with mock.patch.object(PayoutService, "_outstanding_request", return_value=None):
                raced = service.request_payout(vendor_id, "VENDOR", 1500.0)
            self.assertEqual(raced.error, ErrorKind.CONFLICT)
            self.assertEqual(PayoutRequest.query.filter_by(user_type="VENDOR", user_id=vendor_id).count(), 1)

            db.session.add(
                PayoutRequest(user_id=vendor_id, user_type="VENDOR", amount=1000.0, status=PayoutStatus.APPROVED)
            )
            with self.assertRaises(IntegrityError):
                db.session.commit()
            db.session.rollback()

            # Settled and rejected requests do not count as outstanding.
            db.session.add(
                PayoutRequest(user_id=vendor_id, user_type="VENDOR", amount=1000.0, status=PayoutStatus.REJECTED)
            )
            db.session.commit()

    def test_approval_rechecks_balance(self):
        with self.app.app_context():
            service = self._service()
            vendor_id, request_id = self._requested(service, earnings=5000.0, amount=3000.0)
            vendor = db.session.get(Vendor, vendor_id)
            vendor.total_paid_out = 3000.0
            db.session.commit()

            result = service.process_payout_request(request_id, "APPROVE", make_admin().id)
            self.assertEqual(result.error, ErrorKind.VALIDATION)
            self.assertEqual(db.session.get(PayoutRequest, request_id).status, PayoutStatus.PENDING)
            self.assertEqual(Transaction.query.filter_by(type=TransactionType.PAYOUT, vendor_id=vendor_id).count(), 0)

    def test_driver_payout(self):
        with self.app.app_context():
            service = self._service()
            driver = make_driver(earnings=2500.0)
            requested = service.request_payout(driver.id, "DRIVER", 2500)
            self.assertTrue(requested.ok, requested.message)
            self.assertEqual(requested.value.bank_details().bank_code, "057")

            result = service.process_payout_request(requested.value.id, "APPROVE", make_admin().id)
            self.assertTrue(result.ok, result.message)
            driver = db.session.get(Driver, driver.id)
            self.assertEqual(driver.total_paid_out, 2500.0)
            self.assertEqual(driver.unpaid_amount(), 0.0)
            txn = db.session.get(Transaction, result.value.transaction_id)
            self.assertEqual(txn.driver_id, driver.id)
            self.assertIsNone(txn.vendor_id)

    def test_available_balance_and_listing(self):
        with self.app.app_context():
            service = self._service()
            vendor = make_vendor(earnings=4000.0)

            balance = service.available_balance(vendor.id, "vendor")
            self.assertTrue(balance.ok)
            self.assertEqual(balance.value["available_balance"], 4000.0)
            self.assertEqual(balance.value["minimum_payout"], 1000.0)
            self.assertTrue(balance.value["can_request_payout"])
            self.assertIsNone(balance.value["pending_request"])

            service.request_payout(vendor.id, "VENDOR", 1500)
            balance = service.available_balance(vendor.id, "VENDOR")
            self.assertFalse(balance.value["can_request_payout"])
            self.assertEqual(balance.value["pending_request"]["amount"], 1500.0)
            self.assertEqual(service.available_balance(vendor.id, "ADMIN").error, ErrorKind.VALIDATION)

            page = service.list_payout_requests(user_id=vendor.id, user_type="vendor", status="pending")
            self.assertEqual(page.value["total"], 1)
            self.assertEqual(service.list_payout_requests(status="PAID").error, ErrorKind.VALIDATION)


class LedgerGuardTestCase(AppTestCase):
    def test_record_payout_refuses_to_overdraw(self):
        with self.app.app_context():
            vendor = make_vendor(earnings=5000.0)
            self.assertFalse(ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=5000.5))
            self.assertTrue(ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=5000.0))
            db.session.commit()
            self.assertEqual(db.session.get(Vendor, vendor.id).total_paid_out, 5000.0)
            self.assertFalse(ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=0.01))

    def test_reservations_share_the_unpaid_balance(self):
        with self.app.app_context():
            vendor = make_vendor(earnings=5000.0)
            self.assertTrue(ledger.reserve_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=3000.0))
            self.assertFalse(ledger.reserve_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=2500.0))
            self.assertTrue(ledger.reserve_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=2000.0))
            db.session.commit()
            self.assertEqual(db.session.get(Vendor, vendor.id).available_amount(), 0.0)

            self.assertTrue(
                ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=3000.0, from_reserved=True)
            )
            self.assertTrue(ledger.release_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=2000.0))
            db.session.commit()
            vendor = db.session.get(Vendor, vendor.id)
            self.assertEqual(vendor.total_paid_out, 3000.0)
            self.assertEqual(vendor.reserved_payout, 0.0)
            self.assertEqual(vendor.available_amount(), 2000.0)

    def test_settling_an_unheld_amount_is_refused(self):
        with self.app.app_context():
            vendor = make_vendor(earnings=5000.0)
            self.assertFalse(
                ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=1000.0, from_reserved=True)
            )
            self.assertFalse(ledger.release_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=1000.0))
            db.session.rollback()
            self.assertEqual(db.session.get(Vendor, vendor.id).total_paid_out, 0.0)

    def test_negative_amounts_are_programming_errors(self):
        with self.app.app_context():
            vendor = make_vendor()
            with self.assertRaises(ValueError):
                ledger.record_payout(db.session, user_type="VENDOR", user_id=vendor.id, amount=-1)
            with self.assertRaises(ValueError):
                ledger.credit_earnings(db.session, user_type="VENDOR", user_id=vendor.id, amount=-1)


class BankCodeTestCase(unittest.TestCase):
    def test_known_names_and_fallback(self):
        self.assertEqual(resolve_bank_code("GTBank"), "058")
        self.assertEqual(resolve_bank_code("Zenith Bank Plc"), "057")
        self.assertEqual(resolve_bank_code(" access bank "), "044")
        self.assertEqual(resolve_bank_code("Moniepoint MFB"), "000")
        self.assertEqual(resolve_bank_code(None), "000")


if __name__ == "__main__":
    unittest.main()
