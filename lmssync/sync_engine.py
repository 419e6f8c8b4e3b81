from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable

from lmssync.credential_store import CredentialStore
from lmssync.lms_client import LMSClient
from lmssync.models import (
    FetchResult,
    SyncCounts,
    SyncDefaultsConfig,
    SyncOutcome,
    serialize_datetime,
)
from lmssync.reconciler import (
    AnnouncementReconciler,
    ReconcileOutcome,
    SubjectReconciler,
    TaskReconciler,
)
from lmssync.resolver import EntityResolver
from lmssync.state_store import StateStore


NOT_CONFIGURED_MESSAGE = "LMS cookie is not configured."
ALREADY_RUNNING_MESSAGE = "A sync is already running for this user."

# Reconciliation depends on this order: tasks and notes resolve subjects.
FETCH_ORDER = ("sites", "assignments", "announcements")

logger = logging.getLogger(__name__)


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _external_id(item: Any) -> str:
    return str(getattr(item, "id", "") or "")


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        client: LMSClient,
        defaults: SyncDefaultsConfig | None = None,
        credentials: CredentialStore | None = None,
    ) -> None:
        self.state_store = state_store
        self.client = client
        self.defaults = defaults or SyncDefaultsConfig()
        self.credentials = credentials or CredentialStore(state_store, client)
        self.resolver = EntityResolver(state_store)
        # Users with a sync in flight; an entry lives only as long as its run.
        self._running: set[str] = set()
        self._running_guard = threading.Lock()

    def _claim(self, user_id: str) -> bool:
        with self._running_guard:
            if user_id in self._running:
                return False
            self._running.add(user_id)
            return True

    def _release(self, user_id: str) -> None:
        with self._running_guard:
            self._running.discard(user_id)

    def is_running(self, user_id: str) -> bool:
        with self._running_guard:
            return user_id in self._running

    def _fetch_all(self, cookie: str) -> dict[str, FetchResult]:
        fetchers: dict[str, Callable[[str], FetchResult]] = {
            "sites": self.client.fetch_sites,
            "assignments": self.client.fetch_assignments,
            "announcements": self.client.fetch_announcements,
        }
        with ThreadPoolExecutor(
            max_workers=self.defaults.fetch_workers,
            thread_name_prefix="lmssync-fetch",
        ) as pool:
            futures = {name: pool.submit(fetchers[name], cookie) for name in FETCH_ORDER}
            return {name: futures[name].result() for name in FETCH_ORDER}

    def run_sync(self, user_id: str, trigger: str = "manual") -> SyncOutcome:
        if not self._claim(user_id):
            return SyncOutcome(
                success=False,
                user_id=user_id,
                trigger=trigger,
                error=ALREADY_RUNNING_MESSAGE,
            )
        try:
            return self._run_locked(user_id, trigger)
        finally:
            self._release(user_id)

    def _run_locked(self, user_id: str, trigger: str) -> SyncOutcome:
        started_at = datetime.now(timezone.utc)
        run_id: int | None = None
        counts = SyncCounts()

        def record(entity: str, action: str, external_id: str, details: dict[str, Any]) -> None:
            self.state_store.record_audit_event(
                user_id=user_id,
                entity=entity,
                external_id=external_id,
                action=action,
                details=details,
                run_id=run_id,
            )

        def error_handler(entity: str) -> Callable[[Any, Exception], None]:
            def _on_error(item: Any, exc: Exception) -> None:
                external_id = _external_id(item)
                logger.warning("Failed to sync %s %s: %s", entity, external_id, exc)
                record(
                    entity,
                    "item_error",
                    external_id,
                    {
                        "error": f"{type(exc).__name__}: {exc}",
                        "title": str(getattr(item, "title", "") or ""),
                    },
                )

            return _on_error

        def event_handler(entity: str) -> Callable[[str, str, dict[str, Any]], None]:
            return lambda action, external_id, details: record(entity, action, external_id, details)

        try:
            cookie = self.credentials.cookie_for(user_id)
            if not cookie:
                return SyncOutcome(
                    success=False,
                    user_id=user_id,
                    trigger=trigger,
                    duration_ms=_elapsed_ms(started_at),
                    error=NOT_CONFIGURED_MESSAGE,
                )

            run_id = self.state_store.start_sync_run(user_id=user_id, trigger=trigger)
            fetched = self._fetch_all(cookie)
            for name in FETCH_ORDER:
                result = fetched[name]
                if result.success:
                    continue
                record(
                    "system",
                    "fetch_failed",
                    name,
                    {"collection": name, "error": result.error, "auth_failed": result.auth_failed},
                )
                duration_ms = _elapsed_ms(started_at)
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=result.error,
                    duration_ms=duration_ms,
                    synced=0,
                    errors=0,
                )
                return SyncOutcome(
                    success=False,
                    user_id=user_id,
                    trigger=trigger,
                    duration_ms=duration_ms,
                    error=result.error,
                    auth_failed=result.auth_failed,
                    run_id=run_id,
                )

            sites = fetched["sites"].data
            assignments = fetched["assignments"].data
            announcements = fetched["announcements"].data
            counts.total_fetched = {
                "subjects": len(sites),
                "tasks": len(assignments),
                "announcements": len(announcements),
            }

            subjects_result: ReconcileOutcome = SubjectReconciler(
                self.resolver,
                self.state_store,
                event_handler("subject"),
                default_color=self.defaults.subject_color,
            ).run(user_id, sites, error_handler("subject"))
            tasks_result = TaskReconciler(
                self.resolver, self.state_store, event_handler("task")
            ).run(user_id, assignments, error_handler("task"))
            notes_result = AnnouncementReconciler(
                self.resolver, self.state_store, event_handler("note")
            ).run(user_id, announcements, error_handler("note"))

            counts.subjects = subjects_result.synced
            counts.tasks = tasks_result.synced
            counts.announcements = notes_result.synced
            counts.skipped = subjects_result.skipped + tasks_result.skipped + notes_result.skipped
            counts.errors = subjects_result.errors + tasks_result.errors + notes_result.errors

            finished_at = datetime.now(timezone.utc)
            self.state_store.touch_last_sync(user_id, serialize_datetime(finished_at))

            duration_ms = _elapsed_ms(started_at)
            message = (
                f"Synced subjects={counts.subjects}/{len(sites)} "
                f"tasks={counts.tasks}/{len(assignments)} "
                f"announcements={counts.announcements}/{len(announcements)} "
                f"errors={counts.errors}"
            )
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="success",
                message=message,
                duration_ms=duration_ms,
                synced=counts.subjects + counts.tasks + counts.announcements,
                errors=counts.errors,
            )
            return SyncOutcome(
                success=True,
                user_id=user_id,
                trigger=trigger,
                duration_ms=duration_ms,
                data=counts,
                run_id=run_id,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync for %s failed: %s", user_id, error_message)
            if run_id is not None:
                try:
                    self.state_store.finish_sync_run(
                        run_id=run_id,
                        status="error",
                        message=error_message,
                        duration_ms=duration_ms,
                        synced=counts.subjects + counts.tasks + counts.announcements,
                        errors=counts.errors,
                    )
                    record(
                        "system",
                        "run_error",
                        "sync",
                        {
                            "trigger": trigger,
                            "error": error_message,
                            "traceback": traceback.format_exc(limit=5),
                        },
                    )
                except Exception:
                    logger.exception("Could not record failed sync run %s", run_id)
            return SyncOutcome(
                success=False,
                user_id=user_id,
                trigger=trigger,
                duration_ms=duration_ms,
                error=error_message,
                run_id=run_id,
            )
