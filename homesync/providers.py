from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol
from urllib.parse import quote, urlsplit

import requests

from homesync.errors import (
    SAFE_MESSAGES,
    InvalidCredential,
    InvalidLocator,
    ProviderUnavailable,
)
from homesync.ics_parser import UNTITLED, parse_ics
from homesync.models import (
    CalendarSource,
    FetchResult,
    OAuthConfig,
    Provider,
    RawEvent,
    SubscriptionConfig,
    SyncConfig,
    parse_iso_datetime,
    sync_window,
    utc_now,
)

logger = logging.getLogger(__name__)

REVOKED_TOKEN_MESSAGE = "Calendar access was revoked, reconnect the account"
_LINK_SCHEME = re.compile(r"^(webcal|https?)://", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Locators
# ---------------------------------------------------------------------------


def normalize_subscription_url(url: str) -> str:
    normalized = str(url or "").strip()
    if normalized.lower().startswith("webcal://"):
        normalized = "https://" + normalized[len("webcal://"):]
    if not re.match(r"^https?://", normalized, re.IGNORECASE):
        normalized = "https://" + normalized
    normalized = normalized.rstrip("/")
    parts = urlsplit(normalized)
    if not parts.netloc:
        return normalized
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path}{query}"


def mask_subscription_url(url: str) -> str:
    try:
        parts = urlsplit(normalize_subscription_url(url))
    except ValueError:
        return "webcal://.../****.ics"
    if not parts.netloc:
        return "webcal://.../****.ics"
    segments = parts.path.split("/")
    if len(segments) <= 3:
        masked_path = "/".join(segments[:-1]) + "/****"
    else:
        masked_path = f"/{segments[1]}/.../****.ics"
    return f"webcal://{parts.netloc}{masked_path}"


def validate_subscription_url(url: str) -> str | None:
    """Raise ``InvalidLocator`` for unusable links; return a warning for suspicious ones."""
    trimmed = str(url or "").strip()
    if not trimmed:
        raise InvalidLocator("URL is required")
    if not _LINK_SCHEME.match(trimmed):
        raise InvalidLocator("URL must start with webcal://, https://, or http://")
    try:
        parts = urlsplit(normalize_subscription_url(trimmed))
    except ValueError as exc:
        raise InvalidLocator("Invalid URL format") from exc
    if not parts.netloc or " " in parts.netloc:
        raise InvalidLocator("Invalid URL format")
    lowered = trimmed.lower()
    if not lowered.endswith(".ics") and "/subscribe" not in lowered and "/webcal" not in lowered:
        return "URL does not end with .ics. Make sure this is a calendar subscription link."
    return None


def split_oauth_locator(locator: str) -> tuple[str, str]:
    connection_id, sep, calendar_id = str(locator or "").strip().partition("/")
    if not sep or not connection_id.strip() or not calendar_id.strip():
        raise InvalidLocator("OAuth calendars are referenced as <connection>/<calendar id>")
    return connection_id.strip(), calendar_id.strip()


def external_identity(provider: Provider, locator: str) -> str:
    if provider == Provider.SUBSCRIPTION_LINK:
        normalized = normalize_subscription_url(locator)
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    connection_id, calendar_id = split_oauth_locator(locator)
    return f"{connection_id}/{calendar_id}"


# ---------------------------------------------------------------------------
# Credential resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderHandle:
    url: str | None = None
    access_token: str | None = None
    calendar_id: str | None = None


class CredentialResolver(Protocol):
    def resolve(self, source: CalendarSource) -> ProviderHandle:
        ...


class DirectCredentialResolver:
    """Subscription links resolve to their stored URL; OAuth refs to a looked-up token."""

    def __init__(self, token_lookup: Callable[[str], str | None] | None = None) -> None:
        self.token_lookup = token_lookup or (lambda _connection_id: None)

    def resolve(self, source: CalendarSource) -> ProviderHandle:
        if source.provider == Provider.SUBSCRIPTION_LINK:
            return ProviderHandle(url=normalize_subscription_url(source.credential_ref))
        connection_id, calendar_id = split_oauth_locator(source.credential_ref)
        token = self.token_lookup(connection_id)
        if not token:
            raise InvalidCredential(REVOKED_TOKEN_MESSAGE, detail=f"no token for {connection_id}")
        return ProviderHandle(access_token=token, calendar_id=calendar_id)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class ProviderAdapter(Protocol):
    def fetch_events(self, source: CalendarSource, handle: ProviderHandle) -> FetchResult:
        ...


class SubscriptionLinkAdapter:
    def __init__(
        self,
        config: SubscriptionConfig,
        sync_config: SyncConfig,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.sync_config = sync_config
        self.session = session or requests.Session()
        self.clock = clock

    def _read_body(self, response: requests.Response) -> bytes:
        content_length = response.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > self.config.max_response_bytes:
            raise ProviderUnavailable(SAFE_MESSAGES["too_large"], detail=f"Content-Length {content_length}")
        chunks: list[bytes] = []
        size = 0
        for chunk in response.iter_content(chunk_size=64 * 1024):
            size += len(chunk)
            if size > self.config.max_response_bytes:
                raise ProviderUnavailable(SAFE_MESSAGES["too_large"], detail=f">{self.config.max_response_bytes} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    def fetch_events(self, source: CalendarSource, handle: ProviderHandle) -> FetchResult:
        if not handle.url:
            raise InvalidCredential(SAFE_MESSAGES["expired"], detail="no subscription url")
        headers = {
            "User-Agent": self.config.user_agent,
            "Accept": "text/calendar, application/ics",
        }
        if source.etag:
            headers["If-None-Match"] = source.etag
        if source.last_modified:
            headers["If-Modified-Since"] = source.last_modified

        try:
            response = self.session.get(
                handle.url,
                headers=headers,
                timeout=self.config.fetch_timeout_seconds,
                stream=True,
            )
        except requests.Timeout as exc:
            raise ProviderUnavailable(SAFE_MESSAGES["timeout"], detail=str(exc)) from exc
        except requests.RequestException as exc:
            raise ProviderUnavailable(SAFE_MESSAGES["unreachable"], detail=str(exc)) from exc

        try:
            status = response.status_code
            if status == 304:
                return FetchResult(
                    not_modified=True,
                    etag=response.headers.get("ETag") or source.etag,
                    last_modified=response.headers.get("Last-Modified") or source.last_modified,
                )
            if status in (401, 403):
                raise InvalidCredential(SAFE_MESSAGES["auth_required"], detail=f"HTTP {status}")
            if status in (404, 410):
                raise InvalidCredential(SAFE_MESSAGES["expired"], detail=f"HTTP {status}")
            if status >= 500:
                raise ProviderUnavailable(SAFE_MESSAGES["unreachable"], detail=f"HTTP {status}")
            if not response.ok:
                raise ProviderUnavailable(SAFE_MESSAGES["unknown"], detail=f"HTTP {status}")
            try:
                body = self._read_body(response)
            except requests.RequestException as exc:
                raise ProviderUnavailable(SAFE_MESSAGES["unreachable"], detail=str(exc)) from exc
        finally:
            response.close()

        window_start, window_end = sync_window(
            self.clock(), self.sync_config.past_months, self.sync_config.future_months
        )
        events = parse_ics(
            body,
            window_start=window_start,
            window_end=window_end,
            max_occurrences=self.config.max_occurrences,
        )
        return FetchResult(
            events=events,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )


def _google_dates(item: dict[str, Any]) -> tuple[datetime, datetime, bool]:
    start = item.get("start") or {}
    end = item.get("end") or {}
    all_day = bool(start.get("date"))
    if all_day:
        start_at = parse_iso_datetime(f"{start['date']}T00:00:00+00:00")
        end_at = parse_iso_datetime(f"{end['date']}T00:00:00+00:00") if end.get("date") else None
        if end_at is None or end_at <= start_at:
            end_at = start_at + timedelta(days=1)
    else:
        start_at = parse_iso_datetime(start["dateTime"])
        end_at = parse_iso_datetime(end.get("dateTime"))
        if end_at is None or end_at <= start_at:
            end_at = start_at + timedelta(hours=1)
    return start_at, end_at, all_day


def google_item_to_raw(item: dict[str, Any]) -> RawEvent:
    start_at, end_at, all_day = _google_dates(item)
    recurrence = item.get("recurrence") or []
    return RawEvent(
        external_id=str(item["id"]),
        title=str(item.get("summary") or "").strip() or UNTITLED,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        recurrence_key=item.get("recurringEventId") or None,
        recurrence_rule=recurrence[0] if recurrence else None,
        description=item.get("description") or None,
        location=item.get("location") or None,
    )


class OAuthCalendarAdapter:
    def __init__(
        self,
        config: OAuthConfig,
        sync_config: SyncConfig,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.sync_config = sync_config
        self.session = session or requests.Session()
        self.clock = clock

    def _get_page(self, url: str, params: dict[str, str], token: str) -> dict[str, Any]:
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.fetch_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ProviderUnavailable(SAFE_MESSAGES["timeout"], detail=str(exc)) from exc
        except requests.RequestException as exc:
            raise ProviderUnavailable(SAFE_MESSAGES["unreachable"], detail=str(exc)) from exc
        if response.status_code in (401, 403):
            raise InvalidCredential(REVOKED_TOKEN_MESSAGE, detail=f"HTTP {response.status_code}")
        if response.status_code == 404:
            raise InvalidCredential(SAFE_MESSAGES["expired"], detail="calendar not found")
        if not response.ok:
            raise ProviderUnavailable(SAFE_MESSAGES["unreachable"], detail=f"HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(SAFE_MESSAGES["invalid_format"], detail=str(exc)) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(SAFE_MESSAGES["invalid_format"], detail="events payload is not an object")
        return data

    def fetch_events(self, source: CalendarSource, handle: ProviderHandle) -> FetchResult:
        if not handle.access_token or not handle.calendar_id:
            raise InvalidCredential(REVOKED_TOKEN_MESSAGE, detail="incomplete provider handle")
        window_start, window_end = sync_window(
            self.clock(), self.sync_config.past_months, self.sync_config.future_months
        )
        url = f"{self.config.api_base_url}/calendars/{quote(handle.calendar_id, safe='')}/events"
        base_params = {
            "maxResults": str(self.config.page_size),
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": window_start.isoformat(),
            "timeMax": window_end.isoformat(),
        }

        events: list[RawEvent] = []
        page_token: str | None = None
        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token
            data = self._get_page(url, params, handle.access_token)
            for item in data.get("items") or []:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                try:
                    events.append(google_item_to_raw(item))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed OAuth event %s: %s", item.get("id"), exc)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return FetchResult(events=events)


def build_adapters(
    sync_config: SyncConfig,
    subscription_config: SubscriptionConfig,
    oauth_config: OAuthConfig,
    session: requests.Session | None = None,
) -> dict[Provider, ProviderAdapter]:
    shared = session or requests.Session()
    return {
        Provider.SUBSCRIPTION_LINK: SubscriptionLinkAdapter(subscription_config, sync_config, session=shared),
        Provider.OAUTH: OAuthCalendarAdapter(oauth_config, sync_config, session=shared),
    }
