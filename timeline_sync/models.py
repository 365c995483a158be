from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


SOURCE_TYPES = (
    "calendar",
    "content_module",
    "content_topic",
    "dropbox_folder",
    "quiz",
    "discussion_forum",
    "discussion_topic",
    "checklist",
    "generic",
)
DATE_KINDS = ("event", "start", "due", "end")

SYNC_STATUS_SUCCESS = "success"
SYNC_STATUS_PARTIAL = "partial"
SYNC_STATUS_FAILED = "failed"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value).astimezone(timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed).astimezone(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="milliseconds")


def _add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def sync_window(now: datetime, months_back: int = 3, months_forward: int = 18) -> tuple[datetime, datetime]:
    """Return the UTC window a calendar sync run considers in scope.

    Starts at the first instant of the month ``months_back`` months before
    ``now`` and ends at the last millisecond of the month ``months_forward``
    months after it.
    """
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start_year, start_month = _add_months(now_utc.year, now_utc.month, -max(0, months_back))
    start = datetime(start_year, start_month, 1, tzinfo=timezone.utc)
    after_year, after_month = _add_months(now_utc.year, now_utc.month, max(0, months_forward) + 1)
    end = datetime(after_year, after_month, 1, tzinfo=timezone.utc) - timedelta(milliseconds=1)
    return start, end


def timeline_key(source_type: str, source_id: str, date_kind: str) -> str:
    return f"{source_type}:{source_id}:{date_kind}"


@dataclass
class ConnectorConfig:
    base_url: str = "http://localhost:4001"
    internal_secret: str = ""
    timeout_seconds: int = 65

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConnectorConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "http://localhost:4001")).strip().rstrip("/")
            or "http://localhost:4001",
            internal_secret=str(data.get("internal_secret", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 65))),
        )


@dataclass
class SyncConfig:
    window_months_back: int = 3
    window_months_forward: int = 18
    org_unit_chunk_size: int = 25
    delete_batch_size: int = 500

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_months_back=max(0, int(data.get("window_months_back", 3))),
            window_months_forward=max(0, int(data.get("window_months_forward", 18))),
            org_unit_chunk_size=max(1, int(data.get("org_unit_chunk_size", 25))),
            delete_batch_size=max(1, int(data.get("delete_batch_size", 500))),
        )


@dataclass
class AppConfig:
    connector: ConnectorConfig = field(default_factory=ConnectorConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            connector=ConnectorConfig.from_dict(data.get("connector")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class TimelineDraft:
    source_type: str
    source_id: str
    date_kind: str
    org_unit_id: str
    title: str
    start_at: datetime
    description: str | None = None
    end_at: datetime | None = None
    is_all_day: bool = False
    associated_entity_type: str | None = None
    associated_entity_id: str | None = None
    view_url: str | None = None
    raw_data: Any = None

    @property
    def key(self) -> str:
        return timeline_key(self.source_type, self.source_id, self.date_kind)

    @property
    def is_associated(self) -> bool:
        return bool(self.associated_entity_type and self.associated_entity_id)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_at"] = serialize_datetime(self.start_at)
        payload["end_at"] = serialize_datetime(self.end_at)
        return payload


@dataclass(frozen=True)
class SyncOutcome:
    status: str
    events_fetched: int
    events_upserted: int
    events_deleted: int
    duplicates_skipped: int
    org_units_forbidden: tuple[str, ...]
    counts_by_source: dict[str, int]
    window_start: datetime
    window_end: datetime
    synced_at: datetime
    le_version: str = ""
    duration_ms: int = 0
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status in {SYNC_STATUS_SUCCESS, SYNC_STATUS_PARTIAL}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "events_fetched": self.events_fetched,
            "events_upserted": self.events_upserted,
            "events_deleted": self.events_deleted,
            "duplicates_skipped": self.duplicates_skipped,
            "org_units_forbidden": list(self.org_units_forbidden),
            "counts_by_source": dict(self.counts_by_source),
            "window_start": serialize_datetime(self.window_start),
            "window_end": serialize_datetime(self.window_end),
            "synced_at": serialize_datetime(self.synced_at),
            "le_version": self.le_version,
            "duration_ms": self.duration_ms,
            "message": self.message,
        }
