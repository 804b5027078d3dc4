"""
Google Calendar Service
Handles OAuth tokens, calendar API calls and ERP <-> Google event translation
"""
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.orm import Session

from ..config import (
    CALENDAR_TIMEZONE,
    GOOGLE_API_TIMEOUT_SECONDS,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
)
from ..models import DEFAULT_EVENT_TYPE, EVENT_TYPES, CalendarEvent, User
from ..security_utils import encrypt_token, try_decrypt_token

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

PRIMARY_CALENDAR_ID = "primary"
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
LIST_PAGE_SIZE = 250

# Marks events written by the ERP so a pull never re-imports them
ERP_SYNC_MARKER = "[Synced from ERP]"
ERP_SOURCE_PROPERTY = "erpSource"
ERP_SOURCE_VALUE = "agency-erp"
ERP_EVENT_ID_PROPERTY = "erpEventId"
UNTITLED_EVENT = "(No title)"

# Event type mapping from ERP to Google colour ids
ERP_TO_GOOGLE_COLOR = {
    "PROJECT": "9",  # Blue
    "CONTENT": "7",  # Cyan
    "SETTLEMENT": "5",  # Yellow
    "PAYMENT": "10",  # Green
    "INVOICE": "11",  # Red
    "MEETING": "6",  # Orange
    "DEADLINE": "4",  # Flamingo
    "CUSTOM": "8",  # Graphite
}

_TYPE_LINE = re.compile(r"^Type: (\w+)\s*$", re.MULTILINE)


class GoogleCalendarError(Exception):
    """Base class for Google Calendar integration failures"""


class GoogleCalendarNotConfiguredError(GoogleCalendarError):
    """OAuth client credentials are missing from the deployment"""


class GoogleCalendarNotConnectedError(GoogleCalendarError):
    """The user has no usable Google token (never connected, disabled, or refresh failed)"""


class GoogleCalendarChannelNotFoundError(GoogleCalendarError):
    """A push notification arrived for a channel we do not track"""


class GoogleCalendarAPIError(GoogleCalendarError):
    """Google answered with a non-success status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class TokenData:
    access_token: str
    calendar_id: str = PRIMARY_CALENDAR_ID


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calendar_tz() -> ZoneInfo:
    return ZoneInfo(CALENDAR_TIMEZONE)


def calendar_now() -> datetime:
    """Naive wall-clock now in the agency's calendar timezone"""
    return datetime.now(calendar_tz()).replace(tzinfo=None)


def ensure_google_configured() -> None:
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise GoogleCalendarNotConfiguredError("Google Calendar not configured")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return f"HTTP {response.status_code}: {error.get('message', 'unknown error')}"
    if error:
        return f"HTTP {response.status_code}: {payload.get('error_description') or error}"
    return f"HTTP {response.status_code}"


async def _send(
    method: str,
    url: str,
    http_client: Optional[httpx.AsyncClient] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request with the configured timeout, reusing http_client when given"""
    kwargs.setdefault("timeout", GOOGLE_API_TIMEOUT_SECONDS)
    if http_client is not None:
        return await http_client.request(method, url, **kwargs)
    async with httpx.AsyncClient() as client:
        return await client.request(method, url, **kwargs)


# ============================================================================
# OAUTH
# ============================================================================


def build_authorization_url(state: str) -> str:
    """Build the Google consent URL; state is echoed back to the callback"""
    ensure_google_configured()
    params = {
        "client_id": GOOGLE_CLIENT_ID,
        "redirect_uri": GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def _token_request(data: dict[str, str], http_client: Optional[httpx.AsyncClient] = None) -> dict:
    ensure_google_configured()
    response = await _send(
        "POST",
        GOOGLE_TOKEN_URL,
        http_client,
        data={"client_id": GOOGLE_CLIENT_ID, "client_secret": GOOGLE_CLIENT_SECRET, **data},
    )
    if response.status_code != 200:
        raise GoogleCalendarAPIError(_error_message(response), response.status_code)
    return response.json()


async def exchange_code_for_tokens(code: str, http_client: Optional[httpx.AsyncClient] = None) -> dict:
    """Exchange an authorization code for access/refresh tokens"""
    return await _token_request(
        {"code": code, "redirect_uri": GOOGLE_REDIRECT_URI, "grant_type": "authorization_code"},
        http_client,
    )


async def refresh_access_token(
    refresh_token: str, http_client: Optional[httpx.AsyncClient] = None
) -> dict:
    """Run a refresh-token exchange against Google's token endpoint"""
    return await _token_request(
        {"refresh_token": refresh_token, "grant_type": "refresh_token"}, http_client
    )


async def revoke_token(token: str, http_client: Optional[httpx.AsyncClient] = None) -> bool:
    """Revoke a Google token. Returns True if Google accepted the revocation"""
    response = await _send("POST", GOOGLE_REVOKE_URL, http_client, params={"token": token})
    if response.status_code != 200:
        logger.warning(f"⚠️ Google token revoke returned {response.status_code}")
        return False
    return True


async def get_valid_access_token(
    user_id: int,
    db: Session,
    http_client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> Optional[TokenData]:
    """
    Get a valid access token and target calendar for a user, refreshing if necessary.
    Returns None if the user is not connected, sync is disabled, or the refresh fails.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.google_sync_enabled or not user.google_access_token:
        return None

    calendar_id = user.google_calendar_id or PRIMARY_CALENDAR_ID
    now = now or utcnow()
    expiry = user.google_token_expiry
    needs_refresh = expiry is None or expiry - now < TOKEN_REFRESH_MARGIN

    if needs_refresh and user.google_refresh_token:
        logger.info(f"🔄 Google Calendar token expiring for user {user_id}, refreshing...")
        refresh_token = try_decrypt_token(user.google_refresh_token)
        if not refresh_token:
            return None

        try:
            tokens = await refresh_access_token(refresh_token, http_client)
        except (GoogleCalendarError, httpx.HTTPError, ValueError) as e:
            logger.error(f"❌ Token refresh failed for user {user_id}: {e}")
            return None

        new_access_token = tokens.get("access_token")
        if not new_access_token:
            logger.error("❌ No access token in refresh response")
            return None

        expires_in = tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        user.google_access_token = encrypt_token(new_access_token)
        user.google_token_expiry = now + timedelta(seconds=int(expires_in))
        db.commit()

        logger.info(f"✅ Google Calendar token refreshed for user {user_id}")
        return TokenData(access_token=new_access_token, calendar_id=calendar_id)

    access_token = try_decrypt_token(user.google_access_token)
    if not access_token:
        return None
    return TokenData(access_token=access_token, calendar_id=calendar_id)


# ============================================================================
# CALENDAR API CLIENT
# ============================================================================


def _to_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=calendar_tz())
    return value.isoformat()


class GoogleCalendarClient:
    """Thin async wrapper over the Calendar v3 REST API for one calendar"""

    def __init__(
        self,
        access_token: str,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token
        self.calendar_id = calendar_id or PRIMARY_CALENDAR_ID
        self._http_client = http_client

    @property
    def events_url(self) -> str:
        return f"{GOOGLE_CALENDAR_API}/calendars/{quote(self.calendar_id, safe='')}/events"

    async def _request(
        self,
        method: str,
        url: str,
        expected: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> dict:
        response = await _send(
            method,
            url,
            self._http_client,
            headers={"Authorization": f"Bearer {self.access_token}"},
            **kwargs,
        )
        if response.status_code not in expected:
            message = _error_message(response)
            logger.error(f"❌ Google Calendar {method} {url} failed: {message}")
            raise GoogleCalendarAPIError(message, response.status_code)
        if not response.content:
            return {}
        return response.json()

    async def list_calendars(self) -> list[dict]:
        data = await self._request("GET", f"{GOOGLE_CALENDAR_API}/users/me/calendarList")
        return data.get("items", [])

    async def list_events(self, time_min: datetime, time_max: datetime) -> list[dict]:
        """List single-instance events in [time_min, time_max), following pagination"""
        params = {
            "timeMin": _to_rfc3339(time_min),
            "timeMax": _to_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(LIST_PAGE_SIZE),
        }
        events: list[dict] = []
        while True:
            data = await self._request("GET", self.events_url, params=params)
            events.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return events
            params = {**params, "pageToken": page_token}

    async def create_event(self, event: dict) -> dict:
        created = await self._request("POST", self.events_url, expected=(200, 201), json=event)
        logger.info(f"✅ Google Calendar event created: {created.get('id')}")
        return created

    async def update_event(self, event_id: str, event: dict) -> dict:
        return await self._request(
            "PUT", f"{self.events_url}/{quote(event_id, safe='')}", json=event
        )

    async def delete_event(self, event_id: str) -> None:
        try:
            await self._request(
                "DELETE", f"{self.events_url}/{quote(event_id, safe='')}", expected=(200, 204)
            )
        except GoogleCalendarAPIError as e:
            if e.status_code in (404, 410):
                logger.info(f"ℹ️ Google Calendar event {event_id} already gone")
                return
            raise
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

    async def watch_calendar(
        self, webhook_url: str, channel_id: str, token: Optional[str] = None
    ) -> dict:
        """Register a push-notification channel; returns Google's channel resource"""
        body = {"id": channel_id, "type": "web_hook", "address": webhook_url}
        if token:
            body["token"] = token
        return await self._request("POST", f"{self.events_url}/watch", json=body)

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._request(
            "POST",
            f"{GOOGLE_CALENDAR_API}/channels/stop",
            expected=(200, 204),
            json={"id": channel_id, "resourceId": resource_id},
        )


# ============================================================================
# EVENT TRANSLATION
# ============================================================================


def erp_event_to_google_event(event: CalendarEvent) -> dict:
    """
    Build a Google all-day event body from an ERP calendar event.
    Google all-day end dates are exclusive, so a missing end_date yields a same-day event.
    """
    start_day = event.date.date()
    last_day = event.end_date.date() if event.end_date else start_day
    if last_day < start_day:
        last_day = start_day

    project_name = event.project.name if event.project else None
    description = "\n".join(
        line
        for line in (
            event.memo,
            f"Project: {project_name}" if project_name else None,
            f"Type: {event.type}",
            ERP_SYNC_MARKER,
        )
        if line
    )

    private = {ERP_SOURCE_PROPERTY: ERP_SOURCE_VALUE}
    if event.id is not None:
        private[ERP_EVENT_ID_PROPERTY] = str(event.id)

    return {
        "summary": event.title,
        "description": description,
        "start": {"date": start_day.isoformat(), "timeZone": CALENDAR_TIMEZONE},
        "end": {"date": (last_day + timedelta(days=1)).isoformat(), "timeZone": CALENDAR_TIMEZONE},
        "colorId": ERP_TO_GOOGLE_COLOR.get(event.type, ERP_TO_GOOGLE_COLOR[DEFAULT_EVENT_TYPE]),
        "extendedProperties": {"private": private},
    }


def _parse_google_time(value: Optional[dict]) -> tuple[Optional[datetime], bool]:
    """Return (naive local datetime, is_all_day) for a Google start/end object"""
    if not value:
        return None, False
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(calendar_tz()).replace(tzinfo=None)
        return parsed, False
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min), True
    return None, False


def google_event_to_erp_event(remote: dict) -> dict:
    """
    Convert a Google event into ERP calendar event fields.

    Raises:
        ValueError: if the event has no usable start
    """
    start, _ = _parse_google_time(remote.get("start"))
    if start is None:
        raise ValueError(f"Google event {remote.get('id')} has no start time")

    end, end_is_all_day = _parse_google_time(remote.get("end"))
    if end is not None and end_is_all_day:
        # Exclusive all-day end back to the inclusive last day
        end -= timedelta(days=1)
    if end is not None and end <= start:
        end = None

    description = remote.get("description") or ""
    match = _TYPE_LINE.search(description)
    event_type = match.group(1) if match and match.group(1) in EVENT_TYPES else DEFAULT_EVENT_TYPE

    memo_lines = [
        line
        for line in description.splitlines()
        if not line.startswith(("Type: ", "Project: ")) and line.strip() != ERP_SYNC_MARKER
    ]
    memo = "\n".join(memo_lines).strip() or None

    return {
        "title": remote.get("summary") or UNTITLED_EVENT,
        "date": start,
        "end_date": end,
        "type": event_type,
        "memo": memo,
    }


def is_erp_authored(remote: dict) -> bool:
    """True if the Google event was written by this ERP's push"""
    private = (remote.get("extendedProperties") or {}).get("private") or {}
    if private.get(ERP_SOURCE_PROPERTY) == ERP_SOURCE_VALUE:
        return True
    return ERP_SYNC_MARKER in (remote.get("description") or "")
