from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_START_DATE = "2025-01-01"
DEFAULT_OWNERSHIP_TAG = "#calmirror"
DEFAULT_TITLE = "Busy"


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


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def resolve_timezone(name: str) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(text)


def normalize_calendar_id(value: Any) -> str:
    return str(value or "").strip().rstrip("/")


def _valid_timezone_name(value: Any) -> str:
    text = str(value or "").strip() or "UTC"
    try:
        resolve_timezone(text)
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"
    return text


def _valid_date_text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value or "").strip()
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        return DEFAULT_START_DATE


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )

    @property
    def is_complete(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    window_days: int = 31
    mutation_delay_seconds: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            window_days=max(1, int(data.get("window_days", 31))),
            mutation_delay_seconds=max(0.0, float(data.get("mutation_delay_seconds", 1.0))),
        )

    @property
    def window_length(self) -> timedelta:
        return timedelta(days=self.window_days)


@dataclass
class MirrorConfig:
    source_calendar_ids: list[str] = field(default_factory=list)
    destination_calendar_id: str = ""
    default_title: str = DEFAULT_TITLE
    title_by_calendar: dict[str, str] = field(default_factory=dict)
    ownership_tag: str = DEFAULT_OWNERSHIP_TAG
    start_date: str = DEFAULT_START_DATE
    reset_hour: int = 3
    reset_timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MirrorConfig":
        data = data or {}
        raw_titles = data.get("title_by_calendar", {})
        titles: dict[str, str] = {}
        if isinstance(raw_titles, dict):
            for key, value in raw_titles.items():
                calendar_id = normalize_calendar_id(key)
                title = str(value or "").strip()
                if calendar_id and title:
                    titles[calendar_id] = title
        source_ids: list[str] = []
        for item in data.get("source_calendar_ids", []) or []:
            calendar_id = normalize_calendar_id(item)
            if calendar_id and calendar_id not in source_ids:
                source_ids.append(calendar_id)
        return cls(
            source_calendar_ids=source_ids,
            destination_calendar_id=normalize_calendar_id(data.get("destination_calendar_id", "")),
            default_title=str(data.get("default_title", DEFAULT_TITLE)).strip() or DEFAULT_TITLE,
            title_by_calendar=titles,
            ownership_tag=str(data.get("ownership_tag", DEFAULT_OWNERSHIP_TAG)).strip()
            or DEFAULT_OWNERSHIP_TAG,
            start_date=_valid_date_text(data.get("start_date", DEFAULT_START_DATE)),
            reset_hour=min(23, max(0, int(data.get("reset_hour", 3)))),
            reset_timezone=_valid_timezone_name(data.get("reset_timezone", "UTC")),
        )

    def title_for(self, calendar_id: str) -> str:
        return self.title_by_calendar.get(normalize_calendar_id(calendar_id), self.default_title)

    @property
    def local_zone(self) -> tzinfo:
        return resolve_timezone(self.reset_timezone)

    def start_instant(self) -> datetime:
        """Local midnight of ``start_date`` in the reset time zone, as UTC."""
        start_day = date.fromisoformat(self.start_date)
        local_midnight = datetime.combine(start_day, time.min, tzinfo=self.local_zone)
        return local_midnight.astimezone(timezone.utc)


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            mirror=MirrorConfig.from_dict(data.get("mirror")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventRecord:
    calendar_id: str
    uid: str
    summary: str = ""
    description: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    href: str = ""

    def clone(self) -> "EventRecord":
        return EventRecord(
            calendar_id=self.calendar_id,
            uid=self.uid,
            summary=self.summary,
            description=self.description,
            start=self.start,
            end=self.end,
            all_day=self.all_day,
            href=self.href,
        )

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    @property
    def interval(self) -> tuple[datetime | None, datetime | None]:
        # Aware datetimes compare and hash by absolute instant, so the key is
        # independent of the zone each calendar reports.
        return (self.start, self.end)

    def has_tag(self, tag: str) -> bool:
        return bool(tag) and tag in (self.description or "")


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}

    def __str__(self) -> str:
        return f"[{serialize_datetime(self.start)}, {serialize_datetime(self.end)})"


@dataclass
class SyncState:
    cursor: datetime | None = None
    last_reset_date: date | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": serialize_datetime(self.cursor),
            "last_reset_date": self.last_reset_date.isoformat() if self.last_reset_date else None,
        }


@dataclass
class ReconcileCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    unchanged: int = 0

    @property
    def changes(self) -> int:
        return self.created + self.updated + self.deleted

    def add(self, other: "ReconcileCounts") -> None:
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.failed += other.failed
        self.unchanged += other.unchanged

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    mode: str = "batch"
    window: Window | None = None
    counts: ReconcileCounts = field(default_factory=ReconcileCounts)
    windows_processed: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "mode": self.mode,
            "window": self.window.to_dict() if self.window else None,
            "counts": self.counts.to_dict(),
            "windows_processed": self.windows_processed,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()
