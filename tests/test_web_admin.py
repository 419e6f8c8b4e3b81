import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from lmssync.web_admin import create_app


def _response(status_code: int = 200, payload: object = None, reason: str = "OK") -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.reason = reason
    response.json.return_value = payload if payload is not None else {}
    return response


REMOTE = {
    "/direct/site.json": {"site_collection": [{"id": "X1", "title": "Math"}]},
    "/direct/assignment/my.json": {
        "assignment_collection": [
            {"id": "A1", "title": "HW1", "context": "X1", "dueTime": {"time": 1700000000000}}
        ]
    },
    "/direct/announcement/user.json": {
        "announcement_collection": [{"id": "N1", "title": "Welcome", "body": "<p>Hi</p>", "siteId": "X1"}]
    },
}


def _fake_get(url: str, **_kwargs: object) -> mock.Mock:
    for endpoint, payload in REMOTE.items():
        if url.endswith(endpoint):
            return _response(payload=payload)
    return _response(status_code=404, reason="Not Found")


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        env = {
            "LMSSYNC_CONFIG_PATH": str(Path(self.temp_dir.name) / "config.yaml"),
            "LMSSYNC_STATE_PATH": str(Path(self.temp_dir.name) / "state.db"),
        }
        self.env_patch = mock.patch.dict(os.environ, env)
        self.env_patch.start()
        self.client = TestClient(create_app())

    def tearDown(self) -> None:
        self.env_patch.stop()
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_credential_lifecycle(self) -> None:
        with mock.patch("lmssync.lms_client.requests.get", side_effect=_fake_get) as get:
            resp = self.client.put("/api/users/u1/credential", json={"cookie": " JSESSIONID=abc "})
        self.assertEqual(resp.json(), {"success": True})
        self.assertEqual(get.call_args.kwargs["headers"]["Cookie"], "JSESSIONID=abc")

        status = self.client.get("/api/users/u1/credential").json()
        self.assertEqual(status, {"success": True, "data": {"has_credential": True, "last_sync_at": None}})

        self.assertEqual(self.client.delete("/api/users/u1/credential").json(), {"success": True})
        status = self.client.get("/api/users/u1/credential").json()
        self.assertFalse(status["data"]["has_credential"])

    def test_rejected_cookie_surfaces_auth_error(self) -> None:
        with mock.patch("lmssync.lms_client.requests.get", return_value=_response(status_code=403)):
            resp = self.client.put("/api/users/u1/credential", json={"cookie": "stale"})
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("Authentication failed", body["error"])
        self.assertFalse(self.client.get("/api/users/u1/credential").json()["success"])

    def test_sync_endpoint_runs_full_sync(self) -> None:
        with mock.patch("lmssync.lms_client.requests.get", side_effect=_fake_get):
            self.client.put("/api/users/u1/credential", json={"cookie": "JSESSIONID=abc"})
            resp = self.client.post("/api/users/u1/sync")

        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["subjects"], 1)
        self.assertEqual(body["data"]["tasks"], 1)
        self.assertEqual(body["data"]["announcements"], 1)
        self.assertEqual(body["data"]["errors"], 0)

        runs = self.client.get("/api/sync/runs", params={"user_id": "u1"}).json()["runs"]
        self.assertEqual(runs[0]["status"], "success")
        self.assertIsNotNone(self.client.get("/api/users/u1/credential").json()["data"]["last_sync_at"])

    def test_sync_without_cookie_reports_not_configured(self) -> None:
        body = self.client.post("/api/users/u9/sync").json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "LMS cookie is not configured.")

    def test_config_update_reaches_client(self) -> None:
        resp = self.client.put(
            "/api/config", json={"payload": {"lms": {"base_url": "https://lms.example.edu", "timeout_seconds": 9}}}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["lms"]["base_url"], "https://lms.example.edu")
        with mock.patch("lmssync.lms_client.requests.get", side_effect=_fake_get) as get:
            self.client.put("/api/users/u1/credential", json={"cookie": "c"})
        self.assertEqual(get.call_args.args[0], "https://lms.example.edu/direct/site.json")
        self.assertEqual(get.call_args.kwargs["timeout"], 9)

    def test_audit_events_listing(self) -> None:
        with mock.patch("lmssync.lms_client.requests.get", side_effect=_fake_get):
            self.client.put("/api/users/u1/credential", json={"cookie": "c"})
        with mock.patch("lmssync.lms_client.requests.get", return_value=_response(status_code=500, reason="Oops")):
            body = self.client.post("/api/users/u1/sync").json()
        self.assertEqual(body["error"], "API error: 500 Oops")
        events = self.client.get("/api/audit/events").json()["events"]
        self.assertEqual(events[0]["action"], "fetch_failed")
        self.assertEqual(events[0]["external_id"], "sites")


if __name__ == "__main__":
    unittest.main()
