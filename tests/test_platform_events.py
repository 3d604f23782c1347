from __future__ import annotations

import unittest

from partsmarket.extensions import db
from partsmarket.models import PlatformEvent
from partsmarket.models.platform_event import EventSeverity
from partsmarket.utils.events import log_event
from tests.support import AppTestCase


class PlatformEventTestCase(AppTestCase):
    def test_severity_is_normalized(self):
        with self.app.app_context():
            alert = log_event("payout_settlement_overdraw", severity=" alert ", subject_type="vendor", subject_id=7, commit=True)
            self.assertEqual(alert.severity, EventSeverity.ALERT)
            self.assertTrue(alert.is_alert)
            self.assertEqual(alert.subject_id, "7")

            odd = log_event("delivery_status_sync_failed", severity="CRITICAL", commit=True)
            self.assertEqual(odd.severity, EventSeverity.INFO)
            self.assertFalse(odd.is_alert)

    def test_idempotency_key_returns_the_first_row(self):
        with self.app.app_context():
            first = log_event("duplicate_payment", idempotency_key="duplicate_payment:PAY-1", metadata={"amount": 10}, commit=True)
            second = log_event("duplicate_payment", idempotency_key="duplicate_payment:PAY-1", metadata={"amount": 99}, commit=True)
            self.assertEqual(first.id, second.id)
            self.assertEqual(PlatformEvent.query.filter_by(idempotency_key="duplicate_payment:PAY-1").count(), 1)
            self.assertEqual(db.session.get(PlatformEvent, first.id).metadata_dict(), {"amount": 10})

    def test_unreadable_metadata_reads_as_empty(self):
        self.assertEqual(PlatformEvent(metadata_json="not json").metadata_dict(), {})
        self.assertEqual(PlatformEvent(metadata_json="[1, 2]").metadata_dict(), {})


if __name__ == "__main__":
    unittest.main()
