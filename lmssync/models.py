from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


DEFAULT_LMS_BASE_URL = "https://tact.ac.thers.ac.jp"
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
DEFAULT_SUBJECT_COLOR = "#3B82F6"
SYNCED_SUBJECT_TYPE = "other"
UNTITLED_NOTE = "(untitled)"

TASK_STATUS_NOT_STARTED = "not_started"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_OVERDUE = "overdue"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def from_epoch_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def from_epoch_seconds(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass
class LMSConfig:
    base_url: str = DEFAULT_LMS_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LMSConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", DEFAULT_LMS_BASE_URL)).strip().rstrip("/")
            or DEFAULT_LMS_BASE_URL,
            user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)).strip() or DEFAULT_USER_AGENT,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncDefaultsConfig:
    subject_color: str = DEFAULT_SUBJECT_COLOR
    fetch_workers: int = 3
    audit_limit: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncDefaultsConfig":
        data = data or {}
        color = str(data.get("subject_color", DEFAULT_SUBJECT_COLOR)).strip()
        if not (color.startswith("#") and len(color) in {4, 7}):
            color = DEFAULT_SUBJECT_COLOR
        return cls(
            subject_color=color,
            fetch_workers=min(3, max(1, int(data.get("fetch_workers", 3)))),
            audit_limit=max(1, int(data.get("audit_limit", 100))),
        )


@dataclass
class AppConfig:
    lms: LMSConfig = field(default_factory=LMSConfig)
    sync: SyncDefaultsConfig = field(default_factory=SyncDefaultsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            lms=LMSConfig.from_dict(data.get("lms")),
            sync=SyncDefaultsConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ExternalSite:
    id: str
    title: str = ""
    description: str = ""
    entity_reference: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalSite":
        return cls(
            id=_text(data.get("id")).strip(),
            title=_text(data.get("title")),
            description=_text(data.get("description")),
            entity_reference=_text(data.get("entityReference")),
        )


@dataclass
class ExternalAssignment:
    id: str
    title: str = ""
    instructions: str = ""
    due_time_string: str | None = None
    due_time_millis: float | None = None
    due_epoch_second: float | None = None
    context: str | None = None
    user_submission: bool = False
    graded: bool = False
    status: str = ""
    submission_user_submitted: bool | None = None
    submission_epoch_seconds: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalAssignment":
        due_time = data.get("dueTime")
        if not isinstance(due_time, dict):
            due_time = {}
        submissions = data.get("submissions")
        first_submission: dict[str, Any] | None = None
        if isinstance(submissions, list) and submissions and isinstance(submissions[0], dict):
            first_submission = submissions[0]
        return cls(
            id=_text(data.get("id")).strip(),
            title=_text(data.get("title")),
            instructions=_text(data.get("instructions")),
            due_time_string=_optional_text(data.get("dueTimeString")),
            due_time_millis=_optional_number(due_time.get("time")),
            due_epoch_second=_optional_number(due_time.get("epochSecond")),
            context=_optional_text(data.get("context")),
            user_submission=data.get("userSubmission") is True,
            graded=data.get("graded") is True,
            status=_text(data.get("status")),
            submission_user_submitted=(
                first_submission.get("userSubmission") is True if first_submission is not None else None
            ),
            submission_epoch_seconds=(
                _optional_number(first_submission.get("dateSubmittedEpochSeconds"))
                if first_submission is not None
                else None
            ),
        )


@dataclass
class ExternalAnnouncement:
    id: str
    title: str = ""
    body: str = ""
    site_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalAnnouncement":
        return cls(
            id=_text(data.get("id")).strip(),
            title=_text(data.get("title")),
            body=_text(data.get("body")),
            site_id=_optional_text(data.get("siteId")),
        )


@dataclass
class FetchResult:
    success: bool
    data: list[Any] = field(default_factory=list)
    error: str = ""
    auth_failed: bool = False

    @classmethod
    def ok(cls, data: list[Any]) -> "FetchResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, auth_failed: bool = False) -> "FetchResult":
        return cls(success=False, error=error, auth_failed=auth_failed)


@dataclass
class OperationResult:
    success: bool
    data: dict[str, Any] | None = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if not self.success:
            payload["error"] = self.error
        return payload


@dataclass
class SyncCounts:
    subjects: int = 0
    tasks: int = 0
    announcements: int = 0
    errors: int = 0
    skipped: int = 0
    total_fetched: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncOutcome:
    success: bool
    user_id: str
    trigger: str
    duration_ms: int = 0
    data: SyncCounts | None = None
    error: str = ""
    auth_failed: bool = False
    run_id: int | None = None
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "user_id": self.user_id,
            "trigger": self.trigger,
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
            "run_at": serialize_datetime(self.run_at),
        }
        if self.data is not None:
            payload["data"] = self.data.to_dict()
        if not self.success:
            payload["error"] = self.error
            payload["auth_failed"] = self.auth_failed
        return payload
