import tempfile
import unittest
from pathlib import Path
from unittest import mock

from lmssync.credential_store import CredentialStore
from lmssync.lms_client import AUTH_FAILED_MESSAGE
from lmssync.state_store import StateStore


class CredentialStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.client = mock.Mock()
        self.client.test_connection.return_value = (True, "")
        self.credentials = CredentialStore(self.store, self.client)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_blank_cookie_is_rejected_without_remote_call(self) -> None:
        result = self.credentials.save("u1", "   ")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Cookie is required.")
        self.client.test_connection.assert_not_called()
        self.assertIsNone(self.store.get_user("u1"))

    def test_save_validates_then_persists_trimmed_cookie(self) -> None:
        result = self.credentials.save("u1", "  JSESSIONID=abc  ")
        self.assertTrue(result.success)
        self.client.test_connection.assert_called_once_with("JSESSIONID=abc")
        self.assertEqual(self.store.get_user("u1")["lms_cookie"], "JSESSIONID=abc")

    def test_failed_validation_returns_remote_error_and_persists_nothing(self) -> None:
        self.credentials.save("u1", "old-cookie")
        self.client.test_connection.return_value = (False, AUTH_FAILED_MESSAGE)

        result = self.credentials.save("u1", "new-cookie")

        self.assertFalse(result.success)
        self.assertEqual(result.error, AUTH_FAILED_MESSAGE)
        self.assertEqual(self.store.get_user("u1")["lms_cookie"], "old-cookie")

    def test_save_keeps_last_sync_timestamp(self) -> None:
        self.credentials.save("u1", "cookie-1")
        self.store.touch_last_sync("u1", "2026-01-01T00:00:00+00:00")
        self.credentials.save("u1", "cookie-2")
        status = self.credentials.get("u1")
        self.assertEqual(status.data["last_sync_at"], "2026-01-01T00:00:00+00:00")

    def test_get_reports_presence_not_value(self) -> None:
        self.assertFalse(self.credentials.get("missing").success)
        self.credentials.save("u1", "secret-cookie")
        status = self.credentials.get("u1")
        self.assertTrue(status.success)
        self.assertEqual(status.data, {"has_credential": True, "last_sync_at": None})
        self.assertNotIn("secret-cookie", str(status.to_dict()))

    def test_delete_clears_cookie_and_timestamp(self) -> None:
        self.credentials.save("u1", "cookie")
        self.store.touch_last_sync("u1")
        self.assertTrue(self.credentials.delete("u1").success)
        status = self.credentials.get("u1")
        self.assertEqual(status.data, {"has_credential": False, "last_sync_at": None})
        self.assertIsNone(self.credentials.cookie_for("u1"))

    def test_delete_for_unknown_user_reports_not_found(self) -> None:
        result = self.credentials.delete("nobody")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "User not found.")
        self.assertIsNone(self.store.get_user("nobody"))

    def test_storage_failure_is_reported(self) -> None:
        with mock.patch.object(self.store, "set_credential", side_effect=RuntimeError("disk full")):
            result = self.credentials.save("u1", "cookie")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Failed to save the cookie.")
        events = self.store.recent_audit_events()
        self.assertEqual(events[0]["action"], "save_credential_error")
        self.assertIn("disk full", events[0]["details"]["error"])


if __name__ == "__main__":
    unittest.main()
