from __future__ import annotations

import unittest

from partsmarket.extensions import db
from partsmarket.models import Delivery, Driver, Order, Part, PlatformEvent, Transaction
from partsmarket.services.delivery_service import DeliveryStatus, credit_driver_earning, update_delivery_status
from partsmarket.services.order_state import OrderStateMachine, OrderStatus, OrderType
from partsmarket.services.payment_service import TransactionStatus, TransactionType
from partsmarket.services.results import ErrorKind
from tests.support import AppTestCase, make_address, make_customer, make_driver, make_part, make_vendor, place_order


class OrderStateTestCase(AppTestCase):
    def _delivery_order(self, stock: int = 10, qty: int = 2):
        customer = make_customer()
        address = make_address(customer)
        vendor = make_vendor()
        part = make_part(vendor, stock=stock)
        result = place_order(customer, vendor, [(part, qty)], order_type=OrderType.DELIVERY, address_id=address.id)
        self.assertTrue(result.ok, result.message)
        return result.value.id, part.id

    def _collection_order(self):
        customer = make_customer()
        vendor = make_vendor()
        part = make_part(vendor)
        result = place_order(customer, vendor, [(part, 1)])
        self.assertTrue(result.ok, result.message)
        return result.value.id

    def test_collection_lifecycle(self):
        with self.app.app_context():
            order_id = self._collection_order()
            machine = OrderStateMachine(db.session)
            for status in (OrderStatus.PROCESSING, OrderStatus.READY_FOR_PICKUP):
                self.assertTrue(machine.update_status(order_id, status).ok)

            wrong = machine.update_status(order_id, OrderStatus.IN_TRANSIT)
            self.assertFalse(wrong.ok)
            self.assertEqual(wrong.error, ErrorKind.CONFLICT)

            done = machine.update_status(order_id, "collected", notes="Picked up at counter")
            self.assertTrue(done.ok, done.message)
            self.assertEqual(done.details.get("delivery_sync"), "skipped")
            order = db.session.get(Order, order_id)
            self.assertEqual(order.order_status, OrderStatus.COLLECTED)
            self.assertIn("Status changed from READY_FOR_PICKUP to COLLECTED. Picked up at counter", order.notes)

    def test_delivery_lifecycle_mirrors_onto_delivery(self):
        with self.app.app_context():
            order_id, _ = self._delivery_order()
            machine = OrderStateMachine(db.session)

            skipped = machine.update_status(order_id, OrderStatus.DELIVERED)
            self.assertEqual(skipped.error, ErrorKind.CONFLICT)

            self.assertTrue(machine.update_status(order_id, OrderStatus.PROCESSING).ok)
            ready = machine.update_status(order_id, OrderStatus.READY_FOR_PICKUP)
            self.assertEqual(ready.details.get("delivery_sync"), "ok")
            transit = machine.update_status(order_id, OrderStatus.IN_TRANSIT)
            self.assertEqual(transit.details.get("delivery_sync"), "ok")
            delivery = Delivery.query.filter_by(order_id=order_id).first()
            self.assertEqual(delivery.status, DeliveryStatus.IN_TRANSIT)

            delivered = machine.update_status(order_id, OrderStatus.DELIVERED)
            self.assertTrue(delivered.ok, delivered.message)
            db.session.expire_all()
            delivery = Delivery.query.filter_by(order_id=order_id).first()
            self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)
            self.assertIsNotNone(delivery.delivered_time)

    def test_unknown_and_cancel_targets_are_rejected(self):
        with self.app.app_context():
            order_id = self._collection_order()
            machine = OrderStateMachine(db.session)
            self.assertEqual(machine.update_status(order_id, "SHIPPED").error, ErrorKind.VALIDATION)
            self.assertEqual(machine.update_status(order_id, OrderStatus.CANCELLED).error, ErrorKind.VALIDATION)
            self.assertEqual(machine.update_status(999999, OrderStatus.PROCESSING).error, ErrorKind.NOT_FOUND)

    def test_cancel_restores_stock_and_cancels_delivery(self):
        with self.app.app_context():
            order_id, part_id = self._delivery_order(stock=10, qty=4)
            self.assertEqual(db.session.get(Part, part_id).stock_quantity, 6)

            machine = OrderStateMachine(db.session)
            self.assertEqual(machine.cancel_order(order_id, "  ").error, ErrorKind.VALIDATION)

            result = machine.cancel_order(order_id, "Ordered the wrong size")
            self.assertTrue(result.ok, result.message)
            self.assertEqual(result.details.get("delivery_sync"), "ok")
            db.session.expire_all()
            order = db.session.get(Order, order_id)
            self.assertEqual(order.order_status, OrderStatus.CANCELLED)
            self.assertTrue(order.is_cancelled)
            self.assertEqual(order.cancellation_reason, "Ordered the wrong size")
            self.assertEqual(db.session.get(Part, part_id).stock_quantity, 10)
            self.assertEqual(Delivery.query.filter_by(order_id=order_id).first().status, DeliveryStatus.CANCELLED)

            again = machine.cancel_order(order_id, "twice")
            self.assertEqual(again.error, ErrorKind.CONFLICT)
            self.assertEqual(db.session.get(Part, part_id).stock_quantity, 10)

    def test_cannot_cancel_once_ready(self):
        with self.app.app_context():
            order_id = self._collection_order()
            machine = OrderStateMachine(db.session)
            machine.update_status(order_id, OrderStatus.PROCESSING)
            machine.update_status(order_id, OrderStatus.READY_FOR_PICKUP)
            result = machine.cancel_order(order_id, "too late")
            self.assertEqual(result.error, ErrorKind.CONFLICT)
            self.assertEqual(result.details.get("current_status"), OrderStatus.READY_FOR_PICKUP)

    def test_failed_delivery_sync_keeps_order_change_and_raises_alert(self):
        with self.app.app_context():
            order_id, _ = self._delivery_order()
            machine = OrderStateMachine(db.session)
            machine.update_status(order_id, OrderStatus.PROCESSING)
            delivery = Delivery.query.filter_by(order_id=order_id).first()
            delivery.status = DeliveryStatus.FAILED
            db.session.commit()

            result = machine.update_status(order_id, OrderStatus.READY_FOR_PICKUP)
            self.assertTrue(result.ok, result.message)
            self.assertEqual(result.details.get("delivery_sync"), "failed")
            self.assertEqual(db.session.get(Order, order_id).order_status, OrderStatus.READY_FOR_PICKUP)

            alert = PlatformEvent.query.filter_by(event_type="delivery_status_sync_failed", subject_id=str(order_id)).first()
            self.assertIsNotNone(alert)
            self.assertEqual(alert.severity, "ALERT")
            self.assertEqual(alert.metadata_dict().get("delivery_target"), DeliveryStatus.PENDING)


class DeliveryWorkflowTestCase(AppTestCase):
    def test_driver_transitions_follow_courier_workflow(self):
        with self.app.app_context():
            customer = make_customer()
            address = make_address(customer)
            vendor = make_vendor()
            part = make_part(vendor)
            order = place_order(customer, vendor, [(part, 1)], order_type=OrderType.DELIVERY, address_id=address.id).value
            delivery_id = Delivery.query.filter_by(order_id=order.id).first().id

            self.assertEqual(update_delivery_status(db.session, delivery_id, DeliveryStatus.DELIVERED).error, ErrorKind.CONFLICT)
            self.assertEqual(update_delivery_status(db.session, delivery_id, "TELEPORTED").error, ErrorKind.VALIDATION)
            for status in (DeliveryStatus.ASSIGNED, DeliveryStatus.PICKUP_IN_PROGRESS, DeliveryStatus.PICKED_UP):
                self.assertTrue(update_delivery_status(db.session, delivery_id, status).ok)
            row = db.session.get(Delivery, delivery_id)
            self.assertIsNotNone(row.pickup_time)
            self.assertIsNone(row.delivered_time)

            for status in (DeliveryStatus.IN_TRANSIT, DeliveryStatus.ARRIVED, DeliveryStatus.DELIVERED):
                self.assertTrue(update_delivery_status(db.session, delivery_id, status).ok)
            self.assertIsNotNone(db.session.get(Delivery, delivery_id).delivered_time)
            self.assertEqual(update_delivery_status(db.session, delivery_id, DeliveryStatus.FAILED).error, ErrorKind.CONFLICT)

    def _assigned_delivery(self, *, with_driver: bool = True):
        customer = make_customer()
        address = make_address(customer)
        vendor = make_vendor()
        part = make_part(vendor)
        order = place_order(customer, vendor, [(part, 1)], order_type=OrderType.DELIVERY, address_id=address.id).value
        delivery = Delivery.query.filter_by(order_id=order.id).first()
        if not with_driver:
            return order.id, delivery.id, None
        driver = make_driver()
        delivery.driver_id = driver.id
        db.session.commit()
        return order.id, delivery.id, driver.id

    def _earnings(self, delivery_id: int) -> list[Transaction]:
        return [
            t
            for t in Transaction.query.filter_by(type=TransactionType.EARNING).all()
            if t.meta().delivery_id == delivery_id
        ]

    def test_completed_delivery_credits_the_driver_once(self):
        with self.app.app_context():
            _, delivery_id, driver_id = self._assigned_delivery()
            courier_steps = (
                DeliveryStatus.ASSIGNED,
                DeliveryStatus.PICKUP_IN_PROGRESS,
                DeliveryStatus.PICKED_UP,
                DeliveryStatus.IN_TRANSIT,
                DeliveryStatus.ARRIVED,
            )
            for status in courier_steps:
                result = update_delivery_status(db.session, delivery_id, status)
                self.assertIsNone(result.details.get("driver_earning"))
            self.assertEqual(db.session.get(Driver, driver_id).total_earnings, 0.0)

            done = update_delivery_status(db.session, delivery_id, DeliveryStatus.DELIVERED)
            self.assertTrue(done.ok, done.message)
            # 500 fee: 80% share is 400, less a 2% (10) charge.
            self.assertEqual(done.details.get("driver_earning"), 390.0)
            self.assertEqual(db.session.get(Delivery, delivery_id).driver_earning, 390.0)
            self.assertEqual(db.session.get(Driver, driver_id).total_earnings, 390.0)

            rows = self._earnings(delivery_id)
            self.assertEqual(len(rows), 1)
            self.assertTrue(rows[0].reference.startswith("DEL-"))
            self.assertEqual(rows[0].status, TransactionStatus.SUCCESSFUL)
            self.assertEqual((rows[0].amount, rows[0].fee, rows[0].driver_id), (390.0, 10.0, driver_id))

            self.assertIsNone(credit_driver_earning(db.session, db.session.get(Delivery, delivery_id)))
            db.session.commit()
            self.assertEqual(db.session.get(Driver, driver_id).total_earnings, 390.0)
            self.assertEqual(len(self._earnings(delivery_id)), 1)

    def test_order_driven_delivery_credits_the_driver(self):
        with self.app.app_context():
            order_id, delivery_id, driver_id = self._assigned_delivery()
            machine = OrderStateMachine(db.session)
            for status in (OrderStatus.PROCESSING, OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT):
                self.assertTrue(machine.update_status(order_id, status).ok)
            delivered = machine.update_status(order_id, OrderStatus.DELIVERED)
            self.assertTrue(delivered.ok, delivered.message)
            self.assertEqual(delivered.details.get("delivery_sync"), "ok")

            self.assertEqual(db.session.get(Driver, driver_id).total_earnings, 390.0)
            self.assertEqual(len(self._earnings(delivery_id)), 1)

    def test_unassigned_delivery_credits_nobody(self):
        with self.app.app_context():
            order_id, delivery_id, _ = self._assigned_delivery(with_driver=False)
            machine = OrderStateMachine(db.session)
            for status in (OrderStatus.PROCESSING, OrderStatus.READY_FOR_PICKUP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED):
                self.assertTrue(machine.update_status(order_id, status).ok)
            delivery = db.session.get(Delivery, delivery_id)
            self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)
            self.assertIsNone(delivery.driver_earning)
            self.assertEqual(self._earnings(delivery_id), [])


if __name__ == "__main__":
    unittest.main()
