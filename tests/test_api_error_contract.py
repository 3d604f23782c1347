from __future__ import annotations

import unittest

from tests.support import AppTestCase


class ApiErrorContractTestCase(AppTestCase):
    def _assert_error_shape(self, res, status: int):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        self._assert_error_shape(self.client.get("/api/does-not-exist"), 404)

    def test_unauthenticated_order_create_is_rejected(self):
        body = self._assert_error_shape(self.client.post("/api/orders", json={"vendor_id": 1, "items": []}), 401)
        self.assertEqual(body["error"], "UNAUTHORIZED")

    def test_garbage_token_is_treated_as_anonymous(self):
        res = self.client.get("/api/payouts/balance", headers={"Authorization": "Bearer not-a-jwt"})
        self._assert_error_shape(res, 401)

    def test_request_id_is_echoed(self):
        res = self.client.get("/api/does-not-exist", headers={"X-Request-Id": "trace-abc-123"})
        self.assertEqual(res.headers.get("X-Request-Id"), "trace-abc-123")
        self.assertEqual(res.get_json()["trace_id"], "trace-abc-123")

    def test_health_reports_database_and_payments(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["db"], "ok")
        self.assertEqual(body["payments"]["provider"], "mock")
        self.assertEqual(body["payments"]["status"], "configured")


if __name__ == "__main__":
    unittest.main()
