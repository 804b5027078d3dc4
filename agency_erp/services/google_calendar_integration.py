"""
Google Calendar Integration
Connection lifecycle for a user: OAuth connect, status, disconnect,
auto-sync push channels and inbound webhook notifications.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from ..config import PUBLIC_BASE_URL
from ..domain.calendar.repository import CalendarEventRepository
from ..models import User
from ..models_google_calendar import GoogleCalendarChannel
from ..security_utils import (
    encrypt_token,
    generate_secure_token,
    generate_timed_token,
    try_decrypt_token,
    verify_timed_token,
)
from ..webhook_security import verify_channel_token
from .calendar_sync import ClientFactory, SyncResults, sync_calendar
from .google_calendar_service import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    PRIMARY_CALENDAR_ID,
    GoogleCalendarChannelNotFoundError,
    GoogleCalendarClient,
    GoogleCalendarError,
    GoogleCalendarNotConnectedError,
    build_authorization_url,
    exchange_code_for_tokens,
    get_valid_access_token,
    revoke_token,
    utcnow,
)

logger = logging.getLogger(__name__)

OAUTH_STATE_SALT = "google-calendar-oauth"
OAUTH_STATE_MAX_AGE = 600  # seconds
WEBHOOK_PATH = "/google-calendar/webhook"


# ============================================================================
# CONNECT
# ============================================================================


def build_connect_url(user: User) -> str:
    """Google consent URL whose state is a signed, short-lived user reference"""
    state = generate_timed_token({"user_id": user.id}, salt=OAUTH_STATE_SALT)
    return build_authorization_url(state)


def resolve_oauth_state(state: str) -> Optional[int]:
    data = verify_timed_token(state, max_age=OAUTH_STATE_MAX_AGE, salt=OAUTH_STATE_SALT)
    if not data:
        return None
    return data.get("user_id")


async def complete_oauth_connection(
    db: Session, user_id: int, code: str, http_client: Optional[httpx.AsyncClient] = None
) -> User:
    """
    Exchange the authorization code and store the user's Google credentials.

    Raises:
        GoogleCalendarNotConnectedError: unknown user or Google returned no access token
        GoogleCalendarAPIError: the code exchange was rejected
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise GoogleCalendarNotConnectedError("Unknown user in OAuth state")

    tokens = await exchange_code_for_tokens(code, http_client)
    access_token = tokens.get("access_token")
    if not access_token:
        raise GoogleCalendarNotConnectedError("Google returned no access token")

    expires_in = tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
    user.google_access_token = encrypt_token(access_token)
    # Google omits the refresh token on re-consent for some accounts; keep the old one then
    if tokens.get("refresh_token"):
        user.google_refresh_token = encrypt_token(tokens["refresh_token"])
    user.google_token_expiry = utcnow() + timedelta(seconds=int(expires_in))
    user.google_calendar_id = PRIMARY_CALENDAR_ID
    user.google_sync_enabled = True
    db.commit()

    logger.info(f"✅ Google Calendar connected for user: {user.email}")
    return user


# ============================================================================
# STATUS / DISCONNECT
# ============================================================================


def get_sync_status(db: Session, user: User) -> dict:
    """Get Google Calendar connection status"""
    return {
        "connected": bool(user.google_access_token and user.google_sync_enabled),
        "calendarId": user.google_calendar_id or PRIMARY_CALENDAR_ID,
        "syncedEventsCount": CalendarEventRepository.count_linked_events(db, user.id),
    }


async def _stop_channels(
    db: Session, user: User, client_factory: ClientFactory
) -> int:
    """Stop and forget every tracked push channel of a user. Caller commits"""
    channels = (
        db.query(GoogleCalendarChannel).filter(GoogleCalendarChannel.user_id == user.id).all()
    )
    if not channels:
        return 0

    token_data = await get_valid_access_token(user.id, db)
    client = (
        client_factory(token_data.access_token, token_data.calendar_id) if token_data else None
    )
    for channel in channels:
        if client and channel.resource_id:
            try:
                await client.stop_channel(channel.channel_id, channel.resource_id)
            except (GoogleCalendarError, httpx.HTTPError) as e:
                logger.warning(f"Failed to stop Google channel {channel.channel_id}: {e}")
        db.delete(channel)
    return len(channels)


async def disconnect_google_calendar(
    db: Session, user: User, client_factory: ClientFactory = GoogleCalendarClient
) -> None:
    """Clear the user's Google credentials and unlink all of their events"""
    await _stop_channels(db, user, client_factory)

    # Revoke Google tokens
    token = try_decrypt_token(user.google_refresh_token) or try_decrypt_token(
        user.google_access_token
    )
    if token:
        try:
            await revoke_token(token)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to revoke Google tokens: {str(e)}")

    user.google_access_token = None
    user.google_refresh_token = None
    user.google_token_expiry = None
    user.google_calendar_id = None
    user.google_sync_enabled = False
    unlinked = CalendarEventRepository.clear_google_links(db, user.id)
    db.commit()

    logger.info(
        f"✅ Google Calendar disconnected for user: {user.email} ({unlinked} events unlinked)"
    )


# ============================================================================
# AUTO-SYNC (PUSH CHANNELS)
# ============================================================================


def _parse_expiration(value: Optional[str]) -> Optional[datetime]:
    """Google reports channel expiration as epoch milliseconds"""
    if not value:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)


async def enable_auto_sync(
    db: Session, user: User, client_factory: ClientFactory = GoogleCalendarClient
) -> GoogleCalendarChannel:
    """
    Register a Google push channel for the user's calendar, replacing any tracked one.

    Raises:
        GoogleCalendarNotConnectedError: no valid token
        GoogleCalendarAPIError / httpx.HTTPError: Google refused the watch request
    """
    token_data = await get_valid_access_token(user.id, db)
    if not token_data:
        raise GoogleCalendarNotConnectedError("Google Calendar not connected")

    # One live channel per user
    replaced = await _stop_channels(db, user, client_factory)
    if replaced:
        logger.info(f"Replacing {replaced} existing Google channel(s) for user {user.id}")

    client = client_factory(token_data.access_token, token_data.calendar_id)
    channel_id = f"erp-calendar-{user.id}-{uuid.uuid4().hex}"
    channel_token = generate_secure_token()
    webhook_url = f"{PUBLIC_BASE_URL.rstrip('/')}{WEBHOOK_PATH}"

    watch_response = await client.watch_calendar(webhook_url, channel_id, channel_token)

    channel = GoogleCalendarChannel(
        user_id=user.id,
        channel_id=channel_id,
        resource_id=watch_response.get("resourceId"),
        token=channel_token,
        expiration=_parse_expiration(watch_response.get("expiration")),
    )
    db.add(channel)
    db.commit()
    db.refresh(channel)

    logger.info(f"✅ Auto-sync enabled for user {user.id} (channel {channel_id})")
    return channel


async def disable_auto_sync(
    db: Session, user: User, client_factory: ClientFactory = GoogleCalendarClient
) -> int:
    """Stop all tracked push channels of the user; returns how many were removed"""
    stopped = await _stop_channels(db, user, client_factory)
    db.commit()
    logger.info(f"✅ Auto-sync disabled for user {user.id} ({stopped} channels stopped)")
    return stopped


async def handle_webhook_notification(
    db: Session,
    channel_id: str,
    resource_state: Optional[str],
    channel_token: Optional[str],
    client_factory: ClientFactory = GoogleCalendarClient,
) -> Optional[SyncResults]:
    """
    Process a Google push notification by pulling changes for the channel's owner.
    Returns None for the "sync" handshake Google sends when a channel is created.

    Raises:
        GoogleCalendarChannelNotFoundError: the channel is not tracked or has expired
        WebhookSignatureError: the channel token does not match
        GoogleCalendarNotConnectedError: the owner has no valid token anymore
    """
    # The handshake can arrive before the channel row is committed
    if resource_state == "sync":
        logger.info(f"ℹ️ Google channel {channel_id} handshake received")
        return None

    channel = (
        db.query(GoogleCalendarChannel)
        .filter(GoogleCalendarChannel.channel_id == channel_id)
        .first()
    )
    if not channel:
        raise GoogleCalendarChannelNotFoundError(f"Unknown channel: {channel_id}")

    verify_channel_token(channel_token, channel.token, channel_id)

    if channel.expiration is not None and channel.expiration <= utcnow():
        logger.info(f"ℹ️ Google channel {channel_id} expired, removing it")
        db.delete(channel)
        db.commit()
        raise GoogleCalendarChannelNotFoundError(f"Channel expired: {channel_id}")

    return await sync_calendar(db, channel.user, "pull", client_factory=client_factory)


# ============================================================================
# CALENDAR SELECTION
# ============================================================================


async def list_google_calendars(
    db: Session, user: User, client_factory: ClientFactory = GoogleCalendarClient
) -> dict:
    token_data = await get_valid_access_token(user.id, db)
    if not token_data:
        raise GoogleCalendarNotConnectedError("Google Calendar not connected")

    client = client_factory(token_data.access_token, token_data.calendar_id)
    calendars = await client.list_calendars()
    return {
        "calendars": [
            {
                "id": cal.get("id"),
                "summary": cal.get("summary"),
                "primary": cal.get("primary", False),
                "backgroundColor": cal.get("backgroundColor"),
            }
            for cal in calendars
        ],
        "selectedCalendarId": token_data.calendar_id,
    }


def select_google_calendar(db: Session, user: User, calendar_id: str) -> str:
    user.google_calendar_id = calendar_id
    db.commit()
    logger.info(f"Google Calendar {calendar_id} selected for user {user.id}")
    return calendar_id
