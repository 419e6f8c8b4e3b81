from __future__ import annotations

import traceback

from lmssync.lms_client import LMSClient
from lmssync.models import OperationResult
from lmssync.state_store import StateStore


class CredentialStore:
    """Per-user LMS session cookie.

    A cookie is only persisted after the LMS accepts it. Status reads never
    expose the cookie itself.
    """

    def __init__(self, state_store: StateStore, client: LMSClient) -> None:
        self.state_store = state_store
        self.client = client

    def _record_failure(self, user_id: str, action: str, exc: Exception) -> None:
        self.state_store.record_audit_event(
            user_id=user_id,
            entity="credential",
            external_id="",
            action=action,
            details={
                "error": f"{type(exc).__name__}: {exc}",
                "traceback": traceback.format_exc(limit=5),
            },
        )

    def save(self, user_id: str, cookie: str) -> OperationResult:
        cookie = (cookie or "").strip()
        if not cookie:
            return OperationResult(success=False, error="Cookie is required.")

        ok, error = self.client.test_connection(cookie)
        if not ok:
            return OperationResult(success=False, error=error or "Cookie is invalid.")

        try:
            self.state_store.set_credential(user_id, cookie)
        except Exception as exc:
            self._record_failure(user_id, "save_credential_error", exc)
            return OperationResult(success=False, error="Failed to save the cookie.")
        return OperationResult(success=True)

    def get(self, user_id: str) -> OperationResult:
        try:
            user = self.state_store.get_user(user_id)
        except Exception as exc:
            self._record_failure(user_id, "get_credential_error", exc)
            return OperationResult(success=False, error="Failed to read the cookie status.")
        if user is None:
            return OperationResult(success=False, error="User not found.")
        return OperationResult(
            success=True,
            data={
                "has_credential": bool(user.get("lms_cookie")),
                "last_sync_at": user.get("last_sync_at"),
            },
        )

    def delete(self, user_id: str) -> OperationResult:
        try:
            cleared = self.state_store.clear_credential(user_id)
        except Exception as exc:
            self._record_failure(user_id, "delete_credential_error", exc)
            return OperationResult(success=False, error="Failed to delete the cookie.")
        if not cleared:
            return OperationResult(success=False, error="User not found.")
        return OperationResult(success=True)

    def cookie_for(self, user_id: str) -> str | None:
        user = self.state_store.get_user(user_id)
        if user is None:
            return None
        return user.get("lms_cookie") or None
