from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


DEFAULT_HOME_STAY_KEYWORDS = [
    "daddy", "dad", "father", "papa", "dada",
    "mommy", "mom", "mother", "mama", "mummy", "mum",
    "grandma", "grandmother", "nana", "granny", "oma",
    "grandpa", "grandfather", "gramps", "granddad", "opa",
    "aunt", "auntie", "uncle",
    "home", "house", "stay", "custody",
]

DEFAULT_OAUTH_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


class Provider(str, Enum):
    OAUTH = "oauth"
    SUBSCRIPTION_LINK = "subscription-link"


class SyncStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    NEVER = "never"


class ImportedEventStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class CandidateReason(str, Enum):
    ALL_DAY = "all_day"
    MULTI_DAY = "multi_day"
    RECURRING = "recurring"
    TITLE_MATCH = "title_match"


class MatchType(str, Enum):
    EVENT_ID = "event_id"
    TITLE_EXACT = "title_exact"
    TITLE_CONTAINS = "title_contains"


class ResultingEventType(str, Enum):
    HOME_DAY = "home_day"
    EVENT = "event"


class ConfirmationStatus(str, Enum):
    NONE = "none"
    PENDING_CONFIRMATION = "pending_confirmation"
    AUTO_CONFIRMED = "auto_confirmed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


USER_DECIDED_STATUSES = {ConfirmationStatus.CONFIRMED, ConfirmationStatus.REJECTED}


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


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def normalize_title(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def content_hash(
    title: str,
    start_at: datetime | None,
    end_at: datetime | None,
    all_day: bool,
    recurrence_key: str | None,
) -> str:
    payload = "|".join(
        [
            title or "",
            serialize_datetime(start_at) or "",
            serialize_datetime(end_at) or "",
            "1" if all_day else "0",
            recurrence_key or "",
        ]
    )
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()  # nosec B324


def sync_window(now: datetime, past_months: int, future_months: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    start = now_utc - timedelta(days=30 * max(0, past_months))
    end = now_utc + timedelta(days=30 * max(0, future_months))
    return start, end


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    timeout_seconds: int = 60
    interval_seconds: int = 300
    default_refresh_minutes: int = 30
    max_sources_per_run: int = 10
    lease_ttl_seconds: int = 300
    past_months: int = 6
    future_months: int = 12

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            default_refresh_minutes=max(1, int(data.get("default_refresh_minutes", 30))),
            max_sources_per_run=max(1, int(data.get("max_sources_per_run", 10))),
            lease_ttl_seconds=max(10, int(data.get("lease_ttl_seconds", 300))),
            past_months=max(0, int(data.get("past_months", 6))),
            future_months=max(1, int(data.get("future_months", 12))),
        )


@dataclass
class SubscriptionConfig:
    fetch_timeout_seconds: int = 30
    max_response_bytes: int = 5 * 1024 * 1024
    max_occurrences: int = 2000
    user_agent: str = "homesync/1.0 (Calendar Sync)"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SubscriptionConfig":
        data = data or {}
        return cls(
            fetch_timeout_seconds=max(1, int(data.get("fetch_timeout_seconds", 30))),
            max_response_bytes=max(1024, int(data.get("max_response_bytes", 5 * 1024 * 1024))),
            max_occurrences=max(1, int(data.get("max_occurrences", 2000))),
            user_agent=str(data.get("user_agent", "")).strip() or "homesync/1.0 (Calendar Sync)",
        )


@dataclass
class OAuthConfig:
    api_base_url: str = DEFAULT_OAUTH_API_BASE_URL
    fetch_timeout_seconds: int = 30
    page_size: int = 250
    access_tokens: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OAuthConfig":
        data = data or {}
        raw_tokens = data.get("access_tokens", {})
        tokens: dict[str, str] = {}
        if isinstance(raw_tokens, dict):
            for key, value in raw_tokens.items():
                connection_id = str(key).strip()
                token = str(value or "").strip()
                if connection_id and token:
                    tokens[connection_id] = token
        return cls(
            api_base_url=str(data.get("api_base_url", "")).strip().rstrip("/") or DEFAULT_OAUTH_API_BASE_URL,
            fetch_timeout_seconds=max(1, int(data.get("fetch_timeout_seconds", 30))),
            page_size=min(2500, max(1, int(data.get("page_size", 250)))),
            access_tokens=tokens,
        )


@dataclass
class CandidateConfig:
    keywords: list[str] = field(default_factory=lambda: list(DEFAULT_HOME_STAY_KEYWORDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CandidateConfig":
        data = data or {}
        raw = data.get("keywords", DEFAULT_HOME_STAY_KEYWORDS)
        if not isinstance(raw, list):
            raw = DEFAULT_HOME_STAY_KEYWORDS
        return cls(keywords=[normalize_title(x) for x in raw if normalize_title(x)])


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    candidates: CandidateConfig = field(default_factory=CandidateConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            subscription=SubscriptionConfig.from_dict(data.get("subscription")),
            oauth=OAuthConfig.from_dict(data.get("oauth")),
            candidates=CandidateConfig.from_dict(data.get("candidates")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class CalendarSource:
    id: str
    provider: Provider
    child_id: str
    credential_ref: str
    external_identity: str
    display_name: str = ""
    active: bool = True
    last_synced_at: datetime | None = None
    last_sync_status: SyncStatus = SyncStatus.NEVER
    last_sync_error: str | None = None
    refresh_interval_minutes: int = 30
    etag: str | None = None
    last_modified: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.last_synced_at is None:
            return True
        return self.last_synced_at + timedelta(minutes=self.refresh_interval_minutes) <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "child_id": self.child_id,
            "external_identity": self.external_identity,
            "display_name": self.display_name,
            "active": self.active,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "last_sync_status": self.last_sync_status.value,
            "last_sync_error": self.last_sync_error,
            "refresh_interval_minutes": self.refresh_interval_minutes,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass(frozen=True)
class RawEvent:
    external_id: str
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    recurrence_key: str | None = None
    recurrence_rule: str | None = None
    description: str | None = None
    location: str | None = None

    @property
    def content_hash(self) -> str:
        return content_hash(self.title, self.start_at, self.end_at, self.all_day, self.recurrence_key)


@dataclass
class FetchResult:
    events: list[RawEvent] = field(default_factory=list)
    etag: str | None = None
    last_modified: str | None = None
    not_modified: bool = False


@dataclass
class ImportedEvent:
    id: str
    source_id: str
    child_id: str
    external_event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    recurrence_key: str | None = None
    recurrence_rule: str | None = None
    content_hash: str = ""
    status: ImportedEventStatus = ImportedEventStatus.ACTIVE
    candidate_ignored: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    removed_at: datetime | None = None

    @property
    def duration(self) -> timedelta:
        return self.end_at - self.start_at

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key in ("start_at", "end_at", "created_at", "updated_at", "removed_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class MappingRule:
    id: str
    child_id: str
    match_type: MatchType
    match_value: str
    priority: int = 0
    home_id: str | None = None
    resulting_event_type: ResultingEventType = ResultingEventType.EVENT
    auto_confirm: bool = False
    active: bool = True
    source_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def normalized_value(self) -> str:
        if self.match_type == MatchType.EVENT_ID:
            return self.match_value.strip()
        return normalize_title(self.match_value)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["match_type"] = self.match_type.value
        payload["resulting_event_type"] = self.resulting_event_type.value
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class CalendarEvent:
    id: str
    child_id: str
    origin_imported_event_id: str
    source_id: str
    title: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    home_id: str | None = None
    confirmation_status: ConfirmationStatus = ConfirmationStatus.NONE
    event_type: ResultingEventType = ResultingEventType.EVENT
    mapping_rule_id: str | None = None
    confirmed_at: datetime | None = None
    removed: bool = False
    updated_at: datetime | None = None

    @property
    def is_home_stay(self) -> bool:
        return self.home_id is not None and self.event_type == ResultingEventType.HOME_DAY

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["confirmation_status"] = self.confirmation_status.value
        payload["event_type"] = self.event_type.value
        for key in ("start_at", "end_at", "confirmed_at", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class HomeStayCandidate:
    key: str
    source_id: str
    child_id: str
    title: str
    reason: CandidateReason
    occurrence_count: int
    sample_event_ids: list[str] = field(default_factory=list)
    suggested_match_type: MatchType = MatchType.EVENT_ID
    recurrence_description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["reason"] = self.reason.value
        payload["suggested_match_type"] = self.suggested_match_type.value
        return payload


@dataclass(frozen=True)
class ClassificationOutcome:
    rule_id: str
    home_id: str | None
    resulting_event_type: ResultingEventType
    auto_confirm: bool


@dataclass
class ReconcileCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "deleted": self.deleted}


@dataclass
class InitialSync:
    events_imported: int = 0
    candidates_found: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"events_imported": self.events_imported, "candidates_found": self.candidates_found}


@dataclass
class ConnectResult:
    source: CalendarSource
    initial_sync: InitialSync

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.to_dict(), "initial_sync": self.initial_sync.to_dict()}


@dataclass
class SyncResult:
    source_id: str
    status: str
    message: str
    duration_ms: int
    counts: ReconcileCounts
    trigger: str
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "counts": self.counts.to_dict(),
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }
