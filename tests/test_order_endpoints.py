from __future__ import annotations

import unittest
from unittest import mock

from partsmarket.extensions import db
from partsmarket.models import Delivery, Order, Part, Vendor
from partsmarket.services.delivery_service import DeliveryStatus
from partsmarket.services.order_state import OrderStatus, OrderType, PaymentStatus
from tests.support import (
    AppTestCase,
    ScriptedProvider,
    auth_headers,
    make_address,
    make_admin,
    make_customer,
    make_driver,
    make_part,
    make_vendor,
    place_order,
)


class OrderEndpointsTestCase(AppTestCase):
    def _seed(self) -> dict:
        with self.app.app_context():
            customer = make_customer()
            stranger = make_customer()
            vendor = make_vendor()
            part = make_part(vendor, price=2500.0, stock=8)
            admin = make_admin()
            return {
                "customer_user": customer.user_id,
                "stranger_user": stranger.user_id,
                "vendor_user": vendor.user_id,
                "vendor_id": vendor.id,
                "part_id": part.id,
                "admin_user": admin.id,
            }

    def _create(self, ids: dict, quantity: int = 2):
        return self.client.post(
            "/api/orders",
            json={
                "vendor_id": ids["vendor_id"],
                "order_type": "collection",
                "items": [{"part_id": ids["part_id"], "quantity": quantity}],
            },
            headers=auth_headers(ids["customer_user"]),
        )

    def test_create_view_and_list(self):
        ids = self._seed()
        res = self._create(ids)
        self.assertEqual(res.status_code, 201)
        order = res.get_json()["order"]
        self.assertEqual(order["order_type"], OrderType.COLLECTION)
        self.assertEqual(order["subtotal"], 5000.0)
        self.assertEqual(order["total"], 5250.0)
        self.assertEqual(len(order["items"]), 1)
        self.assertEqual(order["items"][0]["part_name"], "Brake pad")

        mine = self.client.get(f"/api/orders/{order['id']}", headers=auth_headers(ids["customer_user"]))
        self.assertEqual(mine.status_code, 200)
        as_vendor = self.client.get(f"/api/orders/{order['id']}", headers=auth_headers(ids["vendor_user"]))
        self.assertEqual(as_vendor.status_code, 200)
        other = self.client.get(f"/api/orders/{order['id']}", headers=auth_headers(ids["stranger_user"]))
        self.assertEqual(other.status_code, 403)
        missing = self.client.get("/api/orders/999999", headers=auth_headers(ids["customer_user"]))
        self.assertEqual(missing.status_code, 404)

        history = self.client.get("/api/orders/my", headers=auth_headers(ids["customer_user"]))
        self.assertEqual(history.get_json()["total"], 1)
        listing = self.client.get("/api/vendor/orders?status=received", headers=auth_headers(ids["vendor_user"]))
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.get_json()["items"][0]["id"], order["id"])
        not_vendor = self.client.get("/api/vendor/orders", headers=auth_headers(ids["customer_user"]))
        self.assertEqual(not_vendor.status_code, 403)

    def test_create_errors_map_to_status_codes(self):
        ids = self._seed()
        too_many = self._create(ids, quantity=50)
        self.assertEqual(too_many.status_code, 400)
        body = too_many.get_json()
        self.assertEqual(body["error"], "INSUFFICIENT_STOCK")
        self.assertEqual(body["details"]["available"], 8)

        bad = self.client.post(
            "/api/orders",
            json={"vendor_id": ids["vendor_id"], "items": "lots"},
            headers=auth_headers(ids["customer_user"]),
        )
        self.assertEqual(bad.status_code, 400)

        vendor_buys = self.client.post(
            "/api/orders",
            json={"vendor_id": ids["vendor_id"], "items": [{"part_id": ids["part_id"], "quantity": 1}]},
            headers=auth_headers(ids["vendor_user"]),
        )
        self.assertEqual(vendor_buys.status_code, 403)

    def test_status_updates_and_cancel(self):
        ids = self._seed()
        first = self._create(ids).get_json()["order"]
        second = self._create(ids, quantity=3).get_json()["order"]

        denied = self.client.post(
            f"/api/orders/{first['id']}/status",
            json={"status": "PROCESSING"},
            headers=auth_headers(ids["customer_user"]),
        )
        self.assertEqual(denied.status_code, 403)

        moved = self.client.post(
            f"/api/orders/{first['id']}/status",
            json={"status": "PROCESSING", "notes": "Packing"},
            headers=auth_headers(ids["vendor_user"]),
        )
        self.assertEqual(moved.status_code, 200)
        self.assertEqual(moved.get_json()["order"]["order_status"], OrderStatus.PROCESSING)
        self.assertEqual(moved.get_json()["delivery_sync"], "skipped")

        illegal = self.client.post(
            f"/api/orders/{first['id']}/status",
            json={"status": "COLLECTED"},
            headers=auth_headers(ids["vendor_user"]),
        )
        self.assertEqual(illegal.status_code, 409)

        cancelled = self.client.post(
            f"/api/orders/{second['id']}/cancel",
            json={"reason": "Found it cheaper"},
            headers=auth_headers(ids["customer_user"]),
        )
        self.assertEqual(cancelled.status_code, 200)
        self.assertTrue(cancelled.get_json()["order"]["is_cancelled"])
        with self.app.app_context():
            # 8 in stock, 2 held by the first order, 3 returned by the cancel.
            self.assertEqual(db.session.get(Part, ids["part_id"]).stock_quantity, 6)

        no_reason = self.client.post(
            f"/api/orders/{first['id']}/cancel",
            json={},
            headers=auth_headers(ids["customer_user"]),
        )
        self.assertEqual(no_reason.status_code, 400)

    def test_driver_updates_assigned_delivery(self):
        with self.app.app_context():
            customer = make_customer()
            address = make_address(customer)
            vendor = make_vendor()
            part = make_part(vendor)
            driver = make_driver()
            other_driver = make_driver()
            order = place_order(customer, vendor, [(part, 1)], order_type=OrderType.DELIVERY, address_id=address.id).value
            delivery = Delivery.query.filter_by(order_id=order.id).first()
            delivery.driver_id = driver.id
            db.session.commit()
            delivery_id, driver_user, other_user = delivery.id, driver.user_id, other_driver.user_id

        path = f"/api/deliveries/{delivery_id}/status"
        stranger = self.client.post(path, json={"status": "ASSIGNED"}, headers=auth_headers(other_user))
        self.assertEqual(stranger.status_code, 403)
        ok = self.client.post(path, json={"status": "ASSIGNED"}, headers=auth_headers(driver_user))
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.get_json()["delivery"]["status"], DeliveryStatus.ASSIGNED)
        skip = self.client.post(path, json={"status": "DELIVERED"}, headers=auth_headers(driver_user))
        self.assertEqual(skip.status_code, 409)


class PaymentEndpointsTestCase(AppTestCase):
    def setUp(self):
        self.provider = ScriptedProvider()
        for target in (
            "partsmarket.segments.segment_payments.build_payments_provider",
            "partsmarket.segments.segment_payouts.build_payments_provider",
        ):
            patcher = mock.patch(target, return_value=self.provider)
            patcher.start()
            self.addCleanup(patcher.stop)

    def _seed(self) -> dict:
        with self.app.app_context():
            customer = make_customer()
            stranger = make_customer()
            vendor = make_vendor()
            part = make_part(vendor, price=10000.0, stock=4)
            admin = make_admin()
            order = place_order(customer, vendor, [(part, 1)]).value
            return {
                "customer_user": customer.user_id,
                "stranger_user": stranger.user_id,
                "vendor_user": vendor.user_id,
                "vendor_id": vendor.id,
                "admin_user": admin.id,
                "order_id": order.id,
            }

    def test_pay_refund_and_pay_out(self):
        ids = self._seed()
        customer = auth_headers(ids["customer_user"])
        admin = auth_headers(ids["admin_user"])

        forbidden = self.client.post(
            "/api/payments/initialize",
            json={"order_id": ids["order_id"]},
            headers=auth_headers(ids["stranger_user"]),
        )
        self.assertEqual(forbidden.status_code, 403)

        started = self.client.post("/api/payments/initialize", json={"order_id": ids["order_id"]}, headers=customer)
        self.assertEqual(started.status_code, 201)
        reference = started.get_json()["reference"]
        self.assertEqual(started.get_json()["session_url"], f"https://pay.test/{reference}")

        verified = self.client.post("/api/payments/verify", json={"reference": reference}, headers=customer)
        self.assertEqual(verified.status_code, 200)
        txn = verified.get_json()["transaction"]
        self.assertEqual(txn["status"], "SUCCESSFUL")

        history = self.client.get(f"/api/payments/transactions?order_id={ids['order_id']}", headers=customer)
        self.assertEqual(history.get_json()["total"], 1)

        refund = self.client.post(
            "/api/payments/refunds",
            json={"order_id": ids["order_id"], "transaction_id": txn["id"], "amount": 500, "reason": "Scratched"},
            headers=customer,
        )
        self.assertEqual(refund.status_code, 201)
        refund_id = refund.get_json()["refund"]["id"]

        not_admin = self.client.post(f"/api/admin/payments/refunds/{refund_id}/process", json={"action": "APPROVE"}, headers=customer)
        self.assertEqual(not_admin.status_code, 403)
        processed = self.client.post(
            f"/api/admin/payments/refunds/{refund_id}/process",
            json={"action": "APPROVE", "notes": "ok"},
            headers=admin,
        )
        self.assertEqual(processed.status_code, 200)
        self.assertEqual(processed.get_json()["refund"]["status"], "PROCESSED")

        with self.app.app_context():
            order = db.session.get(Order, ids["order_id"])
            self.assertEqual(order.payment_status, PaymentStatus.PARTIALLY_REFUNDED)
            earned = db.session.get(Vendor, ids["vendor_id"]).total_earnings
        self.assertEqual(earned, 9500.0)

        vendor = auth_headers(ids["vendor_user"])
        balance = self.client.get("/api/payouts/balance", headers=vendor)
        self.assertEqual(balance.status_code, 200)
        self.assertEqual(balance.get_json()["balance"]["available_balance"], 9500.0)

        customer_payout = self.client.post("/api/payouts/request", json={"amount": 2000}, headers=customer)
        self.assertEqual(customer_payout.status_code, 403)
        self.assertEqual(customer_payout.get_json()["message"], "Vendor or driver account required")

        requested = self.client.post("/api/payouts/request", json={"amount": 2000}, headers=vendor)
        self.assertEqual(requested.status_code, 201)
        request_id = requested.get_json()["payout_request"]["id"]
        listed = self.client.get("/api/payouts/requests?status=PENDING", headers=vendor)
        self.assertEqual(listed.get_json()["total"], 1)

        paid = self.client.post(f"/api/admin/payouts/{request_id}/process", json={"action": "APPROVE"}, headers=admin)
        self.assertEqual(paid.status_code, 200)
        body = paid.get_json()
        self.assertEqual(body["payout_request"]["status"], "PROCESSED")
        self.assertIsNone(body["transfer_status"])

        with self.app.app_context():
            self.assertEqual(db.session.get(Vendor, ids["vendor_id"]).total_paid_out, 2000.0)

    def test_declined_transfer_surfaces_as_bad_gateway(self):
        ids = self._seed()
        with self.app.app_context():
            vendor = db.session.get(Vendor, ids["vendor_id"])
            vendor.total_earnings = 3000.0
            db.session.commit()
        self.provider.transfer_status = "failed"

        requested = self.client.post("/api/payouts/request", json={"amount": 1500}, headers=auth_headers(ids["vendor_user"]))
        request_id = requested.get_json()["payout_request"]["id"]
        res = self.client.post(
            f"/api/admin/payouts/{request_id}/process",
            json={"action": "APPROVE"},
            headers=auth_headers(ids["admin_user"]),
        )
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.get_json()["error"], "UPSTREAM_FAILURE")


if __name__ == "__main__":
    unittest.main()
