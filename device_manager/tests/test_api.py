import os
import unittest

os.environ.setdefault("DEVICE_MANAGER_DB_URL", "sqlite+pysqlite:///:memory:")

from fastapi.testclient import TestClient

from device_manager.DeviceMan import app, get_device_db, get_transition_engine
from device_manager.tests.fixtures import TransitionDbTestCase


def _actor(actor_id, role="user"):
    return {"X-Actor-ID": str(actor_id), "X-Actor-Role": role}


class DeviceApiTests(TransitionDbTestCase):
    def setUp(self):
        super().setUp()

        def _test_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_transition_engine] = lambda: self.transitions
        app.dependency_overrides[get_device_db] = _test_db
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        super().tearDown()

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        response = self.client.get("/api/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_assign_and_release_flow(self):
        device_id = self.add_device()

        submitted = self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"}, headers=_actor(10))
        self.assertEqual(submitted.status_code, 201)
        body = submitted.json()
        self.assertEqual((body["status"], body["type"], body["userId"]), ("pending", "assign", "10"))
        self.assertEqual(self.client.get(f"/api/devices/{device_id}").json()["status"], "pending")

        approved = self.client.put(f"/api/requests/{body['id']}", json={"status": "approved"}, headers=_actor(90, "manager"))
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["status"], "approved")
        device = self.client.get(f"/api/devices/{device_id}").json()
        self.assertEqual((device["status"], device["assignedToId"]), ("assigned", "10"))

        release = self.client.post(
            f"/api/devices/{device_id}/request",
            json={"type": "release", "reason": "Leaving the project"},
            headers=_actor(10),
        )
        self.assertEqual(release.status_code, 201)
        self.client.put(f"/api/requests/{release.json()['id']}", json={"status": "approved"}, headers=_actor(99, "admin"))

        device = self.client.get(f"/api/devices/{device_id}").json()
        self.assertEqual((device["status"], device["assignedToId"], device["requestedBy"]), ("available", None, None))
        history = self.client.get(f"/api/devices/{device_id}/history").json()
        self.assertEqual(len(history), 2)
        self.assertEqual(history[0]["releaseReason"], "Leaving the project")

    def test_duplicate_request_is_conflict_with_code(self):
        device_id = self.add_device()
        self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"}, headers=_actor(10))

        response = self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"}, headers=_actor(11))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "DuplicatePendingRequest")

    def test_validation_errors_are_bad_request(self):
        device_id = self.add_device()
        response = self.client.post(
            f"/api/devices/{device_id}/request",
            json={"type": "report", "reportType": "lost"},
            headers=_actor(10),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "InvalidReportType")

    def test_missing_actor_is_unauthenticated(self):
        device_id = self.add_device()
        response = self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.pending_count(device_id), 0)

    def test_user_cannot_process_requests(self):
        device_id = self.add_device()
        submitted = self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"}, headers=_actor(10))

        response = self.client.put(f"/api/requests/{submitted.json()['id']}", json={"status": "approved"}, headers=_actor(10))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "Unauthorized")

    def test_unknown_ids_are_not_found(self):
        self.assertEqual(self.client.get("/api/devices/999").status_code, 404)
        response = self.client.put("/api/requests/999/cancel", headers=_actor(10))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "RequestNotFound")

    def test_cancel_then_cancel_again(self):
        device_id = self.add_device()
        submitted = self.client.post(f"/api/devices/{device_id}/request", json={"type": "assign"}, headers=_actor(10))
        request_id = submitted.json()["id"]

        first = self.client.put(f"/api/requests/{request_id}/cancel", headers=_actor(10))
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "cancelled")

        second = self.client.put(f"/api/requests/{request_id}/cancel", headers=_actor(10))
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "AlreadyProcessed")

    def test_return_with_explicit_date(self):
        device_id = self.add_device()
        submitted = self.client.post(f"/api/devices/{device_id}/request", json={"type": "return"}, headers=_actor(10))

        self.client.put(
            f"/api/requests/{submitted.json()['id']}",
            json={"status": "approved", "returnDate": "2026-04-30"},
            headers=_actor(90, "manager"),
        )
        device = self.client.get(f"/api/devices/{device_id}").json()
        self.assertEqual(device["status"], "returned")
        self.assertTrue(device["returnDate"].startswith("2026-04-30T00:00:00"))

    def test_list_requests_filters(self):
        first = self.add_device(SerialNumber="SN-A")
        second = self.add_device(SerialNumber="SN-B")
        self.client.post(f"/api/devices/{first}/request", json={"type": "assign"}, headers=_actor(10))
        self.client.post(f"/api/devices/{second}/request", json={"type": "assign"}, headers=_actor(11))

        pending = self.client.get("/api/requests", params={"status": "pending"}).json()
        self.assertEqual(len(pending), 2)
        mine = self.client.get("/api/requests", params={"userId": 11}).json()
        self.assertEqual([row["deviceId"] for row in mine], [str(second)])
        by_device = self.client.get("/api/requests", params={"deviceId": first}).json()
        self.assertEqual([row["userId"] for row in by_device], ["10"])


if __name__ == "__main__":
    unittest.main()
