"""Tests for the connection lifecycle: OAuth, status, disconnect, auto-sync and webhooks"""

from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from agency_erp.models import CalendarEvent, User
from agency_erp.models_google_calendar import GoogleCalendarChannel
from agency_erp.security_utils import decrypt_token
from agency_erp.services import google_calendar_integration as integration
from agency_erp.services.google_calendar_service import (
    GoogleCalendarAPIError,
    GoogleCalendarChannelNotFoundError,
    GoogleCalendarNotConnectedError,
    calendar_now,
    utcnow,
)
from agency_erp.webhook_security import WebhookSignatureError


@pytest.fixture
def revoke(monkeypatch):
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(integration, "revoke_token", mock)
    return mock


# ============================================================================
# OAuth
# ============================================================================


def test_connect_url_carries_signed_user_state(user):
    url = integration.build_connect_url(user)

    query = parse_qs(urlparse(url).query)
    assert query["client_id"] == ["test-client-id.apps.googleusercontent.com"]
    assert query["access_type"] == ["offline"]
    assert query["redirect_uri"] == ["https://erp.example.com/google-calendar/callback"]
    assert integration.resolve_oauth_state(query["state"][0]) == user.id


def test_tampered_oauth_state_is_rejected(user):
    assert integration.resolve_oauth_state("not-a-signed-state") is None


async def test_oauth_callback_stores_encrypted_tokens(db, make_user):
    user = make_user(connected=False)
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200, json={"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3599}
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        await integration.complete_oauth_connection(db, user.id, "auth-code", http_client=http)

    form = parse_qs(seen[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["auth-code"]

    db.refresh(user)
    assert user.google_access_token != "new-access"
    assert decrypt_token(user.google_access_token) == "new-access"
    assert decrypt_token(user.google_refresh_token) == "new-refresh"
    assert user.google_calendar_id == "primary"
    assert user.google_sync_enabled is True
    assert user.google_token_expiry > utcnow() + timedelta(minutes=55)


async def test_reconnect_without_refresh_token_keeps_previous_one(db, user):
    def handler(request):
        return httpx.Response(200, json={"access_token": "new-access"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        await integration.complete_oauth_connection(db, user.id, "auth-code", http_client=http)

    db.refresh(user)
    assert decrypt_token(user.google_refresh_token) == "stored-refresh-token"


async def test_rejected_code_exchange_raises(db, user):
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(GoogleCalendarAPIError):
            await integration.complete_oauth_connection(db, user.id, "bad-code", http_client=http)


# ============================================================================
# Status / disconnect
# ============================================================================


def test_status_counts_linked_events(db, user, make_event):
    make_event(user, "Linked", datetime(2026, 10, 1), google_event_id="g1")
    make_event(user, "Local only", datetime(2026, 10, 2))

    assert integration.get_sync_status(db, user) == {
        "connected": True,
        "calendarId": "primary",
        "syncedEventsCount": 1,
    }


def test_status_for_disconnected_user(db, make_user):
    user = make_user(connected=False)
    status = integration.get_sync_status(db, user)
    assert status["connected"] is False
    assert status["syncedEventsCount"] == 0


async def test_disconnect_clears_credentials_and_links_but_keeps_events(
    db, user, make_event, google, revoke
):
    make_event(user, "Linked", datetime(2026, 10, 1), google_event_id="g1", synced_at=utcnow())
    make_event(user, "Local only", datetime(2026, 10, 2))

    await integration.disconnect_google_calendar(db, user, google.client)

    revoke.assert_awaited_once_with("stored-refresh-token")
    db.expire_all()
    user = db.get(User, user.id)
    assert user.google_access_token is None
    assert user.google_refresh_token is None
    assert user.google_token_expiry is None
    assert user.google_sync_enabled is False
    events = db.query(CalendarEvent).filter(CalendarEvent.user_id == user.id).all()
    assert len(events) == 2
    assert all(e.google_event_id is None and e.synced_at is None for e in events)
    assert integration.get_sync_status(db, user)["connected"] is False


async def test_disconnect_survives_revoke_network_error(db, user, google, monkeypatch):
    monkeypatch.setattr(
        integration, "revoke_token", AsyncMock(side_effect=httpx.ConnectError("unreachable"))
    )

    await integration.disconnect_google_calendar(db, user, google.client)

    db.refresh(user)
    assert user.google_access_token is None


async def test_disconnect_stops_auto_sync_channels(db, user, google, revoke):
    channel = await integration.enable_auto_sync(db, user, google.client)
    registered = (channel.channel_id, channel.resource_id)

    await integration.disconnect_google_calendar(db, user, google.client)

    assert google.stopped == [registered]
    assert db.query(GoogleCalendarChannel).count() == 0


# ============================================================================
# Auto-sync
# ============================================================================


async def test_enable_auto_sync_registers_and_tracks_channel(db, user, google):
    channel = await integration.enable_auto_sync(db, user, google.client)

    assert channel.channel_id.startswith(f"erp-calendar-{user.id}-")
    assert channel.resource_id == f"res-{channel.channel_id}"
    assert channel.expiration == datetime(2100, 1, 1)
    registered = google.channels[channel.channel_id]
    assert registered["address"] == "https://erp.example.com/google-calendar/webhook"
    assert registered["token"] == channel.token
    assert channel.token


async def test_enable_auto_sync_requires_connection(db, make_user, google):
    user = make_user(connected=False)
    with pytest.raises(GoogleCalendarNotConnectedError):
        await integration.enable_auto_sync(db, user, google.client)
    assert google.calls == []


async def test_enabling_twice_replaces_the_first_channel(db, user, google):
    first = await integration.enable_auto_sync(db, user, google.client)
    first_registration = (first.channel_id, first.resource_id)

    second = await integration.enable_auto_sync(db, user, google.client)

    assert google.stopped == [first_registration]
    assert google.calls.count("watch") == 2
    remaining = db.query(GoogleCalendarChannel).one()
    assert remaining.channel_id == second.channel_id


async def test_disable_auto_sync_stops_every_channel(db, user, google):
    for n in (1, 2):
        db.add(
            GoogleCalendarChannel(
                user_id=user.id, channel_id=f"legacy-{n}", resource_id=f"res-legacy-{n}", token=f"t{n}"
            )
        )
    db.commit()

    stopped = await integration.disable_auto_sync(db, user, google.client)

    assert stopped == 2
    assert sorted(google.stopped) == [("legacy-1", "res-legacy-1"), ("legacy-2", "res-legacy-2")]
    assert db.query(GoogleCalendarChannel).count() == 0


async def test_disable_auto_sync_without_channels(db, user, google):
    assert await integration.disable_auto_sync(db, user, google.client) == 0
    assert google.stopped == []


# ============================================================================
# Webhook
# ============================================================================


async def test_sync_handshake_is_acknowledged_without_syncing(db, google):
    results = await integration.handle_webhook_notification(db, "not-yet-stored", "sync", None, google.client)
    assert results is None
    assert google.calls == []


async def test_webhook_for_unknown_channel_is_rejected(db, google):
    with pytest.raises(GoogleCalendarChannelNotFoundError):
        await integration.handle_webhook_notification(db, "unknown", "exists", "token", google.client)


async def test_webhook_with_wrong_token_is_rejected(db, user, google):
    channel = await integration.enable_auto_sync(db, user, google.client)

    with pytest.raises(WebhookSignatureError):
        await integration.handle_webhook_notification(
            db, channel.channel_id, "exists", "forged", google.client
        )
    assert "list" not in google.calls


async def test_webhook_for_expired_channel_drops_it_without_syncing(db, user, google):
    google.channel_expiration = "1000"
    channel = await integration.enable_auto_sync(db, user, google.client)
    channel_id, token = channel.channel_id, channel.token
    assert channel.expiration < utcnow()

    with pytest.raises(GoogleCalendarChannelNotFoundError):
        await integration.handle_webhook_notification(db, channel_id, "exists", token, google.client)

    assert db.query(GoogleCalendarChannel).count() == 0
    assert "list" not in google.calls


async def test_expired_channel_survives_forged_notification(db, user, google):
    google.channel_expiration = "1000"
    channel = await integration.enable_auto_sync(db, user, google.client)

    with pytest.raises(WebhookSignatureError):
        await integration.handle_webhook_notification(
            db, channel.channel_id, "exists", "forged", google.client
        )
    assert db.query(GoogleCalendarChannel).count() == 1


async def test_webhook_pulls_changes_for_channel_owner_only(db, make_user, google):
    owner = make_user("owner@agency.example")
    bystander = make_user("bystander@agency.example")
    channel = await integration.enable_auto_sync(db, owner, google.client)
    today = calendar_now().date()
    google.add_remote_event("Added on phone", date(today.year, today.month, 1))

    results = await integration.handle_webhook_notification(
        db, channel.channel_id, "exists", channel.token, google.client
    )

    assert results.pulled == 1
    owner_titles = [e.title for e in db.query(CalendarEvent).filter(CalendarEvent.user_id == owner.id)]
    assert owner_titles == ["Added on phone"]
    assert db.query(CalendarEvent).filter(CalendarEvent.user_id == bystander.id).count() == 0


async def test_webhook_for_disconnected_owner_raises_not_connected(db, user, google):
    channel = await integration.enable_auto_sync(db, user, google.client)
    user.google_sync_enabled = False
    db.commit()

    with pytest.raises(GoogleCalendarNotConnectedError):
        await integration.handle_webhook_notification(
            db, channel.channel_id, "exists", channel.token, google.client
        )


# ============================================================================
# Calendar selection
# ============================================================================


async def test_list_calendars_reports_selection(db, user, google):
    listing = await integration.list_google_calendars(db, user, google.client)

    assert listing["selectedCalendarId"] == "primary"
    assert listing["calendars"][0] == {
        "id": "owner@agency.example",
        "summary": "Agency",
        "primary": True,
        "backgroundColor": "#9fe1e7",
    }
    assert listing["calendars"][1]["primary"] is False


async def test_selected_calendar_is_used_by_later_syncs(db, user, google):
    integration.select_google_calendar(db, user, "team@group.calendar.google.com")

    listing = await integration.list_google_calendars(db, user, google.client)

    assert listing["selectedCalendarId"] == "team@group.calendar.google.com"
    assert google.clients[-1] == ("stored-access-token", "team@group.calendar.google.com")
