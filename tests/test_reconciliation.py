from __future__ import annotations

import unittest

from partsmarket.extensions import db
from partsmarket.integrations.payments.base import GatewayStatus
from partsmarket.models import Delivery, Driver, Order, PlatformEvent, Vendor
from partsmarket.services.delivery_service import DeliveryStatus, update_delivery_status
from partsmarket.services.order_state import OrderType
from partsmarket.services.payout_service import PayoutService
from partsmarket.services.reconciliation_service import recompute_payee_balances, recompute_refund_counters
from partsmarket.tasks.ledger_tasks import scan_ledger_drift
from tests.support import (
    AppTestCase,
    ScriptedProvider,
    make_address,
    make_admin,
    make_customer,
    make_driver,
    make_part,
    make_vendor,
    pay_order,
    place_order,
)


def _paid_vendor_order():
    customer = make_customer()
    vendor = make_vendor()
    part = make_part(vendor, price=8000.0, stock=3)
    order = place_order(customer, vendor, [(part, 1)]).value
    paid = pay_order(order.id, ScriptedProvider())
    assert paid.ok, paid.message
    return vendor.id, order.id


def _delivered_by_driver():
    customer = make_customer()
    address = make_address(customer)
    vendor = make_vendor()
    part = make_part(vendor)
    driver = make_driver()
    order = place_order(customer, vendor, [(part, 1)], order_type=OrderType.DELIVERY, address_id=address.id).value
    delivery = Delivery.query.filter_by(order_id=order.id).first()
    delivery.driver_id = driver.id
    db.session.commit()
    for status in (
        DeliveryStatus.ASSIGNED,
        DeliveryStatus.PICKUP_IN_PROGRESS,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.ARRIVED,
        DeliveryStatus.DELIVERED,
    ):
        moved = update_delivery_status(db.session, delivery.id, status)
        assert moved.ok, moved.message
    return driver.id


class CleanLedgerTestCase(AppTestCase):
    def test_settled_history_shows_no_drift(self):
        with self.app.app_context():
            vendor_id, _ = _paid_vendor_order()
            self.assertEqual(db.session.get(Vendor, vendor_id).total_earnings, 7600.0)
            driver_id = _delivered_by_driver()
            self.assertEqual(db.session.get(Driver, driver_id).total_earnings, 390.0)

            payouts = PayoutService(db.session, provider=ScriptedProvider(transfer_status=GatewayStatus.PENDING), config={})
            requested = payouts.request_payout(vendor_id, "VENDOR", 5000.0)
            self.assertTrue(payouts.process_payout_request(requested.value.id, "APPROVE", make_admin().id).ok)
            self.assertEqual(db.session.get(Vendor, vendor_id).reserved_payout, 5000.0)

            payees = recompute_payee_balances(db.session)
            self.assertTrue(payees["ok"])
            self.assertEqual(payees["scope"], "payee_earnings")
            self.assertEqual(payees["drift_count"], 0, payees["drift_items"])
            refunds = recompute_refund_counters(db.session)
            self.assertEqual(refunds["scope"], "order_refunds")
            self.assertEqual(refunds["drift_count"], 0)

        result = self.app.test_cli_runner().invoke(args=["reconcile-earnings", "--fail-on-drift"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("payee_earnings drift_count=0", result.output)
        self.assertIn("order_refunds drift_count=0", result.output)


class DriftDetectionTestCase(AppTestCase):
    def test_tampered_vendor_counter_is_reported(self):
        with self.app.app_context():
            vendor_id, _ = _paid_vendor_order()
            vendor = db.session.get(Vendor, vendor_id)
            vendor.total_earnings = float(vendor.total_earnings) + 1000.0
            db.session.commit()

            report = recompute_payee_balances(db.session)
            items = [i for i in report["drift_items"] if i["user_type"] == "VENDOR" and i["user_id"] == vendor_id]
            self.assertEqual(len(items), 1)
            self.assertEqual(items[0]["computed_earnings"], 7600.0)
            self.assertEqual(items[0]["earnings_drift"], 1000.0)

    def test_reservation_without_an_approved_request_is_reported(self):
        with self.app.app_context():
            vendor = make_vendor(earnings=0.0)
            vendor.reserved_payout = 300.0
            db.session.commit()

            report = recompute_payee_balances(db.session)
            items = [i for i in report["drift_items"] if i["user_type"] == "VENDOR" and i["user_id"] == vendor.id]
            self.assertEqual(len(items), 1)
            self.assertEqual(items[0]["reserved_drift"], 300.0)
            self.assertTrue(items[0]["overdrawn"])

    def test_overdrawn_driver_is_reported(self):
        with self.app.app_context():
            driver = make_driver(earnings=100.0)
            driver.total_paid_out = 500.0
            db.session.commit()

            report = recompute_payee_balances(db.session)
            items = [i for i in report["drift_items"] if i["user_type"] == "DRIVER" and i["user_id"] == driver.id]
            self.assertEqual(len(items), 1)
            self.assertTrue(items[0]["overdrawn"])

    def test_refund_counter_without_refund_rows_is_reported(self):
        with self.app.app_context():
            _, order_id = _paid_vendor_order()
            order = db.session.get(Order, order_id)
            order.refunded_amount = 250.0
            db.session.commit()

            report = recompute_refund_counters(db.session)
            items = [i for i in report["drift_items"] if i["order_id"] == order_id]
            self.assertEqual(len(items), 1)
            self.assertEqual(items[0]["drift"], 250.0)
            self.assertEqual(items[0]["computed_refunded"], 0.0)

    def test_cli_fails_on_drift(self):
        with self.app.app_context():
            make_vendor(earnings=1234.0)

        result = self.app.test_cli_runner().invoke(args=["reconcile-earnings", "--fail-on-drift"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("ledger drift detected", result.output)

        lenient = self.app.test_cli_runner().invoke(args=["reconcile-earnings"])
        self.assertEqual(lenient.exit_code, 0, lenient.output)

    def test_periodic_scan_raises_alert(self):
        with self.app.app_context():
            make_vendor(earnings=99.0)
            outcome = scan_ledger_drift.run(trace_id="scan-test")
            self.assertTrue(outcome["ok"])
            self.assertGreaterEqual(outcome["drift_count"], 1)

            alert = (
                PlatformEvent.query.filter_by(event_type="ledger_drift_detected", subject_type="payee_earnings")
                .order_by(PlatformEvent.id.desc())
                .first()
            )
            self.assertIsNotNone(alert)
            self.assertEqual(alert.severity, "ALERT")
            self.assertEqual(alert.request_id, "scan-test")
            self.assertGreaterEqual(alert.metadata_dict()["drift_count"], 1)


if __name__ == "__main__":
    unittest.main()
