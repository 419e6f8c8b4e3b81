from __future__ import annotations

from typing import Any

from lmssync.state_store import StateStore


class EntityResolver:
    """Finds the local row synced from a given external record.

    ``(user_id, external_id)`` is unique per table, so the first match is the
    only match.
    """

    def __init__(self, state_store: StateStore) -> None:
        self.state_store = state_store

    def resolve(self, kind: str, user_id: str, external_id: str | None) -> dict[str, Any] | None:
        if not external_id:
            return None
        return self.state_store.find_by_external_id(kind, user_id, external_id)

    def subject(self, user_id: str, site_id: str | None) -> dict[str, Any] | None:
        return self.resolve("subject", user_id, site_id)
