from __future__ import annotations

import html
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from lmssync.models import (
    DEFAULT_SUBJECT_COLOR,
    SYNCED_SUBJECT_TYPE,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_NOT_STARTED,
    TASK_STATUS_OVERDUE,
    UNTITLED_NOTE,
    ExternalAnnouncement,
    ExternalAssignment,
    ExternalSite,
    from_epoch_millis,
    from_epoch_seconds,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from lmssync.resolver import EntityResolver
from lmssync.state_store import StateStore


ItemErrorHandler = Callable[[Any, Exception], None]
EventHandler = Callable[[str, str, dict[str, Any]], None]

BREAK_TAG_PATTERN = re.compile(r"<br\s*/?>", re.IGNORECASE)
BLOCK_CLOSE_PATTERN = re.compile(r"</(p|div)>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]*>")
BLANK_LINES_PATTERN = re.compile(r"\n\s*\n+")

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    synced: int = 0
    skipped: int = 0
    errors: int = 0


def reconcile_all(
    items: Iterable[Any],
    upsert: Callable[[Any], bool],
    on_error: ItemErrorHandler | None = None,
) -> ReconcileOutcome:
    """Apply ``upsert`` to each item in order, isolating failures.

    ``upsert`` returns False for an item it deliberately skipped. An exception
    counts one error for that item and processing moves on.
    """
    outcome = ReconcileOutcome()
    for item in items:
        try:
            written = upsert(item)
        except Exception as exc:
            outcome.errors += 1
            if on_error is not None:
                try:
                    on_error(item, exc)
                except Exception:
                    logger.exception("Error handler failed for %r", item)
            continue
        if written:
            outcome.synced += 1
        else:
            outcome.skipped += 1
    return outcome


def html_to_text(value: str | None) -> str:
    if not value:
        return ""
    text = BREAK_TAG_PATTERN.sub("\n", value)
    text = BLOCK_CLOSE_PATTERN.sub("\n", text)
    text = TAG_PATTERN.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    return BLANK_LINES_PATTERN.sub("\n\n", text.strip())


def resolve_due_date(assignment: ExternalAssignment, now: datetime | None = None) -> tuple[datetime, bool]:
    """Return ``(due_date, estimated)``.

    Epoch fields win over the free-text string. With neither present the due
    date falls back to ``now`` and is flagged as estimated.
    """
    if assignment.due_epoch_second is not None:
        return from_epoch_seconds(assignment.due_epoch_second), False
    if assignment.due_time_millis is not None:
        return from_epoch_millis(assignment.due_time_millis), False
    if assignment.due_time_string:
        parsed = parse_iso_datetime(assignment.due_time_string)
        if parsed is not None:
            return parsed, False
    return now or utc_now(), True


def submission_state(assignment: ExternalAssignment) -> tuple[bool, datetime | None]:
    if assignment.submission_user_submitted is not None:
        submitted = bool(assignment.submission_user_submitted and assignment.submission_epoch_seconds)
        if submitted and assignment.submission_epoch_seconds:
            return True, from_epoch_seconds(assignment.submission_epoch_seconds)
        return False, None
    status = assignment.status.lower()
    submitted = (
        assignment.user_submission
        or assignment.graded
        or "submitted" in status
        or "graded" in status
    )
    return submitted, None


class _Reconciler:
    kind = ""

    def __init__(
        self,
        resolver: EntityResolver,
        state_store: StateStore,
        on_event: EventHandler | None = None,
    ) -> None:
        self.resolver = resolver
        self.state_store = state_store
        self.on_event = on_event

    def _emit(self, action: str, external_id: str, details: dict[str, Any]) -> None:
        if self.on_event is not None:
            self.on_event(action, external_id, details)

    def _create(
        self,
        user_id: str,
        external_id: str,
        values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            return self.state_store.insert_entity(
                self.kind, user_id=user_id, external_id=external_id, values=values
            )
        except sqlite3.IntegrityError:
            # A concurrent writer created the row first; fall back to updating it.
            existing = self.resolver.resolve(self.kind, user_id, external_id)
            if existing is None:
                raise
            updated = self.state_store.update_entity(self.kind, existing["id"], update_values)
            return updated or existing

    def run(
        self,
        user_id: str,
        items: Iterable[Any],
        on_error: ItemErrorHandler | None = None,
    ) -> ReconcileOutcome:
        return reconcile_all(items, lambda item: self.upsert(user_id, item), on_error)

    def upsert(self, user_id: str, item: Any) -> bool:
        raise NotImplementedError


class SubjectReconciler(_Reconciler):
    kind = "subject"

    def __init__(
        self,
        resolver: EntityResolver,
        state_store: StateStore,
        on_event: EventHandler | None = None,
        *,
        default_color: str = DEFAULT_SUBJECT_COLOR,
    ) -> None:
        super().__init__(resolver, state_store, on_event)
        self.default_color = default_color

    def upsert(self, user_id: str, item: ExternalSite) -> bool:
        if not item.id:
            raise ValueError("site is missing an id")
        update_values = {"name": item.title}
        existing = self.resolver.resolve(self.kind, user_id, item.id)
        if existing is not None:
            self.state_store.update_entity(self.kind, existing["id"], update_values)
            return True
        self._create(
            user_id,
            item.id,
            {"name": item.title, "type": SYNCED_SUBJECT_TYPE, "color": self.default_color},
            update_values,
        )
        return True


class TaskReconciler(_Reconciler):
    kind = "task"

    def upsert(self, user_id: str, item: ExternalAssignment) -> bool:
        if not item.id:
            raise ValueError("assignment is missing an id")
        now = utc_now()
        subject = self.resolver.subject(user_id, item.context)
        due_date, estimated = resolve_due_date(item, now)
        if estimated:
            self._emit("due_date_defaulted", item.id, {"title": item.title})
        submitted, submitted_at = submission_state(item)
        past_due = not estimated and due_date < now
        content = {
            "title": item.title,
            "description": html_to_text(item.instructions) or None,
            "due_date": serialize_datetime(due_date),
            "due_date_estimated": 1 if estimated else 0,
            "subject_id": subject["id"] if subject else None,
        }

        existing = self.resolver.resolve(self.kind, user_id, item.id)
        if existing is not None:
            update_values = dict(content)
            if estimated and existing.get("due_date_estimated"):
                # An estimated due date is stamped once.
                update_values.pop("due_date")
            current_status = existing.get("status")
            if submitted and current_status != TASK_STATUS_COMPLETED:
                update_values["status"] = TASK_STATUS_COMPLETED
                update_values["completed_at"] = serialize_datetime(submitted_at or now)
            elif not submitted and past_due and current_status != TASK_STATUS_COMPLETED:
                update_values["status"] = TASK_STATUS_OVERDUE
            elif not submitted and not past_due and current_status == TASK_STATUS_OVERDUE:
                update_values["status"] = TASK_STATUS_NOT_STARTED
            self.state_store.update_entity(self.kind, existing["id"], update_values)
            return True

        status = TASK_STATUS_NOT_STARTED
        completed_at = None
        if submitted:
            status = TASK_STATUS_COMPLETED
            completed_at = serialize_datetime(submitted_at or now)
        elif past_due:
            status = TASK_STATUS_OVERDUE
        values = dict(content, task_type="assignment", status=status, completed_at=completed_at)
        self._create(user_id, item.id, values, content)
        return True


class AnnouncementReconciler(_Reconciler):
    kind = "note"

    def upsert(self, user_id: str, item: ExternalAnnouncement) -> bool:
        if not item.id:
            raise ValueError("announcement is missing an id")
        subject = self.resolver.subject(user_id, item.site_id)
        if subject is None:
            self._emit("skip_orphan_announcement", item.id, {"site_id": item.site_id or ""})
            return False
        update_values = {
            "title": html_to_text(item.title) or UNTITLED_NOTE,
            "content": html_to_text(item.body),
        }
        existing = self.resolver.resolve(self.kind, user_id, item.id)
        if existing is not None:
            self.state_store.update_entity(self.kind, existing["id"], update_values)
            return True
        values = dict(update_values, subject_id=subject["id"], note_type="announcement")
        self._create(user_id, item.id, values, update_values)
        return True
