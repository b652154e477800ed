from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


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


def is_date_only(value: str | None) -> bool:
    return bool(value) and "T" not in str(value)


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def day_window(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start, start + timedelta(days=1)


def parse_event_bound(value: str, tz: tzinfo) -> datetime:
    """Turn an event start/end into an aware datetime; all-day values become local midnight."""
    if is_date_only(value):
        return datetime.combine(date.fromisoformat(value.strip()), time.min, tzinfo=tz)
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid event time: {value!r}")
    return parsed


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: float = 0.0
    api_key: str = ""
    calendar_id: str = ""
    work_calendar_id: str = ""
    enable_work_calendar: bool = False
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        try:
            token_expiry = float(data.get("token_expiry", 0) or 0)
        except (TypeError, ValueError):
            token_expiry = 0.0
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            access_token=str(data.get("access_token", "")).strip(),
            refresh_token=str(data.get("refresh_token", "")).strip(),
            token_expiry=token_expiry,
            api_key=str(data.get("api_key", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            work_calendar_id=str(data.get("work_calendar_id", "")).strip(),
            enable_work_calendar=bool(data.get("enable_work_calendar", False)),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    vault_path: str = ""
    daily_note_folder: str = ""
    timezone: str = "UTC"
    interval_seconds: int = 300
    default_event_duration: int = 60
    default_start_hour: int = 9
    sync_tag: str = "#gcal"
    auto_sync: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        sync_tag = str(data.get("sync_tag", "#gcal")).strip() or "#gcal"
        if not sync_tag.startswith("#"):
            sync_tag = f"#{sync_tag}"
        return cls(
            vault_path=str(data.get("vault_path", "")).strip(),
            daily_note_folder=str(data.get("daily_note_folder", "")).strip().strip("/"),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            default_event_duration=max(1, int(data.get("default_event_duration", 60))),
            default_start_hour=min(23, max(0, int(data.get("default_start_hour", 9)))),
            sync_tag=sync_tag,
            auto_sync=bool(data.get("auto_sync", False)),
        )


@dataclass
class TimelineConfig:
    start_hour: int = 6
    end_hour: int = 22

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TimelineConfig":
        data = data or {}
        start_hour = min(23, max(0, int(data.get("start_hour", 6))))
        end_hour = min(23, max(start_hour, int(data.get("end_hour", 22))))
        return cls(start_hour=start_hour, end_hour=end_hour)


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    timeline: TimelineConfig = field(default_factory=TimelineConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            timeline=TimelineConfig.from_dict(data.get("timeline")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class TaskRecord:
    id: str
    source_path: str
    line_number: int
    raw_line: str
    content: str
    external_task_id: str
    date: str | None = None
    time: str | None = None
    duration_minutes: int | None = None
    completed: bool = False
    sync_enabled: bool = False
    remote_event_id: str | None = None

    def effective_date(self, context_date: date) -> date:
        if self.date:
            return date.fromisoformat(self.date)
        return context_date

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventOrigin(str, Enum):
    REMOTE_ONLY = "remote-only"
    TASK_DERIVED = "task-derived"


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: str
    end: str
    description: str = ""
    linked_task_id: str | None = None
    origin: EventOrigin = EventOrigin.REMOTE_ONLY
    calendar_id: str = ""
    source_path: str | None = None

    @property
    def all_day(self) -> bool:
        return is_date_only(self.start)

    def start_at(self, tz: tzinfo) -> datetime:
        return parse_event_bound(self.start, tz)

    def end_at(self, tz: tzinfo) -> datetime:
        end = parse_event_bound(self.end, tz)
        start = self.start_at(tz)
        if self.all_day and end <= start:
            return start + timedelta(days=1)
        return end

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["origin"] = self.origin.value
        return payload


@dataclass
class DocumentContext:
    path: str
    text: str
    context_date: date
    date_bound: bool = False


@dataclass
class RemoteMutation:
    action: str
    event_id: str
    task_id: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileOutcome:
    text: str
    line_edits: dict[int, str] = field(default_factory=dict)
    mutations: list[RemoteMutation] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    auth_failed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.line_edits) or bool(self.mutations)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    trigger: str
    path: str = ""
    notices: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "trigger": self.trigger,
            "path": self.path,
            "notices": list(self.notices),
            "run_at": serialize_datetime(self.run_at),
        }
