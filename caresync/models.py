from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any


MANAGED_CALENDAR_STATES = ("unprovisioned", "provisioning", "verified")
CANCELLATION_POLICIES = ("cancel", "unlink")
ITEM_TYPES = ("appointment", "bill")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
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
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def date_to_datetime(value: date, is_end: bool = False) -> datetime:
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def advance_managed_state(current: str | None, target: str) -> str:
    """Return the later of two managed-calendar states; states never regress."""
    current_rank = MANAGED_CALENDAR_STATES.index(current) if current in MANAGED_CALENDAR_STATES else 0
    target_rank = MANAGED_CALENDAR_STATES.index(target)
    return MANAGED_CALENDAR_STATES[max(current_rank, target_rank)]


# --- configuration -------------------------------------------------------


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    timeout_seconds: int = 20

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            api_base_url=str(data.get("api_base_url", "")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            token_endpoint=str(data.get("token_endpoint", "")).strip() or "https://oauth2.googleapis.com/token",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 20))),
        )


@dataclass
class SyncConfig:
    lookback_days: int = 30
    debounce_seconds: float = 15.0
    retry_base_seconds: float = 60.0
    retry_max_seconds: float = 300.0
    poll_interval_seconds: int = 1800
    enable_polling_fallback: bool = False
    default_time_zone: str = "UTC"
    cancellation_policy: str = "cancel"
    lock_ttl_seconds: int = 600
    max_error_detail: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        policy = str(data.get("cancellation_policy", "cancel")).strip().lower()
        if policy not in CANCELLATION_POLICIES:
            policy = "cancel"
        retry_base = max(0.0, float(data.get("retry_base_seconds", 60)))
        return cls(
            lookback_days=max(1, int(data.get("lookback_days", 30))),
            debounce_seconds=max(0.0, float(data.get("debounce_seconds", 15))),
            retry_base_seconds=retry_base,
            retry_max_seconds=max(retry_base, float(data.get("retry_max_seconds", 300))),
            poll_interval_seconds=max(30, int(data.get("poll_interval_seconds", 1800))),
            enable_polling_fallback=bool(data.get("enable_polling_fallback", False)),
            default_time_zone=str(data.get("default_time_zone", "UTC")).strip() or "UTC",
            cancellation_policy=policy,
            lock_ttl_seconds=max(30, int(data.get("lock_ttl_seconds", 600))),
            max_error_detail=max(1, int(data.get("max_error_detail", 50))),
        )


@dataclass
class ManagedCalendarConfig:
    summary: str = "CareBase"
    acl_role: str = "writer"
    acl_refresh_seconds: int = 3600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ManagedCalendarConfig":
        data = data or {}
        role = str(data.get("acl_role", "writer")).strip().lower()
        if role not in {"writer", "reader"}:
            role = "writer"
        return cls(
            summary=str(data.get("summary", "CareBase")).strip() or "CareBase",
            acl_role=role,
            acl_refresh_seconds=max(60, int(data.get("acl_refresh_seconds", 3600))),
        )


@dataclass
class WatchConfig:
    webhook_base_url: str = ""
    webhook_path: str = "/api/integrations/google/webhook"
    ttl_seconds: int = 7 * 24 * 60 * 60
    renewal_threshold_seconds: int = 60 * 60
    renewal_lookahead_seconds: int = 12 * 60 * 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WatchConfig":
        data = data or {}
        path = str(data.get("webhook_path", "")).strip() or "/api/integrations/google/webhook"
        if not path.startswith("/"):
            path = "/" + path
        return cls(
            webhook_base_url=str(data.get("webhook_base_url", "")).strip().rstrip("/"),
            webhook_path=path,
            ttl_seconds=max(60, int(data.get("ttl_seconds", 7 * 24 * 60 * 60))),
            renewal_threshold_seconds=max(0, int(data.get("renewal_threshold_seconds", 60 * 60))),
            renewal_lookahead_seconds=max(0, int(data.get("renewal_lookahead_seconds", 12 * 60 * 60))),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_base_url)

    @property
    def webhook_address(self) -> str:
        return f"{self.webhook_base_url}{self.webhook_path}"


@dataclass
class SecurityConfig:
    encryption_key: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecurityConfig":
        data = data or {}
        return cls(encryption_key=str(data.get("encryption_key", "")).strip())


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    managed_calendar: ManagedCalendarConfig = field(default_factory=ManagedCalendarConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            managed_calendar=ManagedCalendarConfig.from_dict(data.get("managed_calendar")),
            watch=WatchConfig.from_dict(data.get("watch")),
            security=SecurityConfig.from_dict(data.get("security")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# --- engine-owned records ------------------------------------------------


@dataclass
class SyncLink:
    item_id: int
    item_type: str
    user_id: int
    calendar_id: str | None = None
    event_id: str | None = None
    etag: str | None = None
    last_synced_at: datetime | None = None
    last_sync_direction: str | None = None
    local_hash: str | None = None
    remote_updated_at: datetime | None = None
    sync_status: str = "pending"
    last_error: str | None = None


@dataclass
class Credential:
    user_id: int
    access_token: str
    refresh_token: str
    scope: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    token_type: str | None = None
    calendar_id: str | None = None
    sync_token: str | None = None
    last_pulled_at: datetime | None = None
    managed_calendar_id: str | None = None
    managed_calendar_summary: str | None = None
    managed_calendar_state: str = "unprovisioned"
    managed_calendar_verified_at: datetime | None = None
    managed_calendar_acl_role: str | None = None
    legacy_calendar_id: str | None = None
    needs_reauth: bool = False

    def with_updates(self, **kwargs: Any) -> "Credential":
        return replace(self, **kwargs)


@dataclass
class WatchChannel:
    channel_id: str
    user_id: int
    calendar_id: str
    resource_id: str
    resource_uri: str | None = None
    expiration: datetime | None = None
    channel_token: str | None = None


# --- collaborator entities -----------------------------------------------


@dataclass
class Appointment:
    item_id: int
    user_id: int
    summary: str
    start: datetime | None
    end: datetime | None
    start_time_zone: str | None = None
    end_time_zone: str | None = None
    location: str | None = None
    prep_note: str | None = None
    status: str = "scheduled"

    item_type = "appointment"

    def with_updates(self, **kwargs: Any) -> "Appointment":
        return replace(self, **kwargs)


@dataclass
class Bill:
    item_id: int
    user_id: int
    amount: Decimal | None = None
    due_date: date | None = None
    statement_date: date | None = None
    status: str = "todo"
    pay_url: str | None = None

    item_type = "bill"

    def with_updates(self, **kwargs: Any) -> "Bill":
        return replace(self, **kwargs)


Entity = Appointment | Bill


# --- provider resources --------------------------------------------------


@dataclass
class EventDateTime:
    date_time: datetime | None = None
    date: date | None = None
    time_zone: str | None = None
    raw_date_time: str | None = None

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.date is not None

    def as_datetime(self) -> datetime | None:
        if self.date_time is not None:
            return self.date_time
        if self.date is not None:
            return date_to_datetime(self.date)
        return None


@dataclass
class CalendarEvent:
    event_id: str
    status: str = "confirmed"
    etag: str | None = None
    updated: datetime | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventDateTime | None = None
    end: EventDateTime | None = None
    private_properties: dict[str, str] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"


@dataclass
class CalendarInfo:
    calendar_id: str
    summary: str = ""
    time_zone: str | None = None


@dataclass
class AclEntry:
    role: str
    scope_type: str
    scope_value: str | None = None
    rule_id: str | None = None


@dataclass
class ChannelRegistration:
    channel_id: str
    resource_id: str
    resource_uri: str | None = None
    expiration: datetime | None = None


@dataclass
class EventPage:
    items: list[CalendarEvent] = field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None


# --- results -------------------------------------------------------------


@dataclass
class ItemError:
    message: str
    item_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"item_id": self.item_id, "message": self.message}


@dataclass
class SyncOptions:
    force_full: bool = False
    calendar_id: str | None = None
    pull_remote: bool = True


@dataclass
class SyncSummary:
    calendar_id: str = ""
    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[ItemError] = field(default_factory=list)
    cursor_recovered: bool = False
    max_error_detail: int = 50
    dropped_errors: int = 0

    def add_error(self, message: str, item_id: int | None = None) -> None:
        if len(self.errors) >= self.max_error_detail:
            self.dropped_errors += 1
            return
        self.errors.append(ItemError(message=message, item_id=item_id))

    @property
    def error_count(self) -> int:
        return len(self.errors) + self.dropped_errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": [error.to_dict() for error in self.errors],
            "error_count": self.error_count,
            "cursor_recovered": self.cursor_recovered,
        }
