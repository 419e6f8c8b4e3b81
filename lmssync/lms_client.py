from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from lmssync.models import (
    ExternalAnnouncement,
    ExternalAssignment,
    ExternalSite,
    FetchResult,
    LMSConfig,
)


SITES_ENDPOINT = "/direct/site.json"
ASSIGNMENTS_ENDPOINT = "/direct/assignment/my.json"
ANNOUNCEMENTS_ENDPOINT = "/direct/announcement/user.json"

AUTH_FAILED_MESSAGE = "Authentication failed: the cookie is invalid or expired."

logger = logging.getLogger(__name__)


def _parse_collection(
    payload: Any,
    key: str,
    factory: Callable[[dict[str, Any]], Any],
) -> list[Any]:
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected response body for {key}: expected an object.")
    raw_items = payload.get(key) or []
    if not isinstance(raw_items, list):
        raise ValueError(f"Unexpected response body for {key}: expected a list.")
    return [factory(item) for item in raw_items if isinstance(item, dict)]


class LMSClient:
    """Read-only client for the Sakai "direct" API.

    Holds no session: every call takes the raw cookie string and sends it
    verbatim in the ``Cookie`` header.
    """

    def __init__(self, config: LMSConfig) -> None:
        self.config = config

    def _url(self, endpoint: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{endpoint}"

    def _get(
        self,
        endpoint: str,
        cookie: str,
        *,
        collection_key: str,
        factory: Callable[[dict[str, Any]], Any],
        params: dict[str, Any] | None = None,
    ) -> FetchResult:
        try:
            response = requests.get(
                self._url(endpoint),
                headers={
                    "Cookie": cookie,
                    "User-Agent": self.config.user_agent,
                },
                params=params,
                timeout=self.config.timeout_seconds,
            )
            if not response.ok:
                if response.status_code in (401, 403):
                    return FetchResult.failed(AUTH_FAILED_MESSAGE, auth_failed=True)
                return FetchResult.failed(f"API error: {response.status_code} {response.reason}")
            items = _parse_collection(response.json(), collection_key, factory)
            return FetchResult.ok(items)
        except Exception as exc:
            logger.warning("LMS request to %s failed: %s", endpoint, exc)
            return FetchResult.failed(str(exc) or type(exc).__name__)

    def fetch_sites(self, cookie: str) -> FetchResult:
        return self._get(
            SITES_ENDPOINT,
            cookie,
            collection_key="site_collection",
            factory=ExternalSite.from_dict,
            params={"_limit": 1000},
        )

    def fetch_assignments(self, cookie: str) -> FetchResult:
        return self._get(
            ASSIGNMENTS_ENDPOINT,
            cookie,
            collection_key="assignment_collection",
            factory=ExternalAssignment.from_dict,
        )

    def fetch_announcements(self, cookie: str) -> FetchResult:
        return self._get(
            ANNOUNCEMENTS_ENDPOINT,
            cookie,
            collection_key="announcement_collection",
            factory=ExternalAnnouncement.from_dict,
        )

    def test_connection(self, cookie: str) -> tuple[bool, str]:
        result = self.fetch_sites(cookie)
        if result.success:
            return True, ""
        return False, result.error
