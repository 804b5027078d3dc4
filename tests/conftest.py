"""
Test infrastructure

Provides:
  - environment for the app (in-memory SQLite, Google OAuth client configured)
  - a fresh database per test
  - user / event factories
  - FakeGoogleCalendar, an in-memory stand-in for one Google calendar
  - FastAPI TestClient with get_db and the Google client factory overridden
"""

import copy
import os
from datetime import date, datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["PUBLIC_BASE_URL"] = "https://erp.example.com"
os.environ["FRONTEND_URL"] = "https://app.example.com"
os.environ["CALENDAR_TIMEZONE"] = "Asia/Seoul"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agency_erp import models_google_calendar  # noqa: F401
from agency_erp.database import Base
from agency_erp.models import CalendarEvent, User
from agency_erp.security_utils import encrypt_token
from agency_erp.services.google_calendar_service import (
    GoogleCalendarAPIError,
    _parse_google_time,
    utcnow,
)

# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_user(db):
    def _make(
        email="owner@agency.example",
        connected=True,
        token_expires_in=timedelta(hours=1),
        **overrides,
    ) -> User:
        user = User(email=email, name=email.split("@")[0], api_token=f"api-{email}")
        if connected:
            user.google_access_token = encrypt_token("stored-access-token")
            user.google_refresh_token = encrypt_token("stored-refresh-token")
            user.google_token_expiry = utcnow() + token_expires_in
            user.google_calendar_id = "primary"
            user.google_sync_enabled = True
        for key, value in overrides.items():
            setattr(user, key, value)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def make_event(db):
    def _make(user, title, when, **fields) -> CalendarEvent:
        event = CalendarEvent(user_id=user.id, title=title, date=when, **fields)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _make


# ============================================================================
# Fake Google Calendar
# ============================================================================


class FakeGoogleCalendar:
    """In-memory stand-in for one Google calendar, usable as a client factory"""

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.calendars = [
            {"id": "owner@agency.example", "summary": "Agency", "primary": True, "backgroundColor": "#9fe1e7"},
            {"id": "team@group.calendar.google.com", "summary": "Team"},
        ]
        self.channels: dict[str, dict] = {}
        self.stopped: list[tuple[str, str]] = []
        self.failing_summaries: set[str] = set()
        self.list_error = None
        self.calls: list[str] = []
        self.clients: list[tuple[str, str]] = []
        self.channel_expiration = "4102444800000"  # 2100-01-01 UTC, epoch ms
        self._next_id = 1

    def client(self, access_token, calendar_id="primary"):
        self.clients.append((access_token, calendar_id))
        return self

    def _new_id(self) -> str:
        event_id = f"gev{self._next_id}"
        self._next_id += 1
        return event_id

    def add_remote_event(self, summary, start: date, end: date = None, description=None) -> str:
        """Simulate an all-day event created directly in Google Calendar"""
        event_id = self._new_id()
        self.events[event_id] = {
            "id": event_id,
            "summary": summary,
            "description": description,
            "start": {"date": start.isoformat()},
            "end": {"date": (end or start + timedelta(days=1)).isoformat()},
        }
        return event_id

    def add_timed_remote_event(self, summary, start: str, end: str) -> str:
        """Simulate a timed event; start/end are RFC 3339 strings"""
        event_id = self._new_id()
        self.events[event_id] = {
            "id": event_id,
            "summary": summary,
            "start": {"dateTime": start},
            "end": {"dateTime": end},
        }
        return event_id

    async def create_event(self, event):
        self.calls.append("create")
        if event.get("summary") in self.failing_summaries:
            raise GoogleCalendarAPIError("HTTP 400: Invalid event", 400)
        event_id = self._new_id()
        self.events[event_id] = {**copy.deepcopy(event), "id": event_id}
        return copy.deepcopy(self.events[event_id])

    async def update_event(self, event_id, event):
        self.calls.append("update")
        if event.get("summary") in self.failing_summaries:
            raise GoogleCalendarAPIError("HTTP 400: Invalid event", 400)
        if event_id not in self.events:
            raise GoogleCalendarAPIError("HTTP 404: Not Found", 404)
        self.events[event_id] = {**copy.deepcopy(event), "id": event_id}
        return copy.deepcopy(self.events[event_id])

    async def delete_event(self, event_id):
        self.calls.append("delete")
        self.events.pop(event_id, None)

    async def list_events(self, time_min: datetime, time_max: datetime):
        self.calls.append("list")
        if self.list_error:
            raise self.list_error
        # Like Google: timeMin bounds the end, timeMax bounds the start
        in_window = []
        for event in self.events.values():
            start, _ = _parse_google_time(event.get("start"))
            if start is None:
                in_window.append(event)
                continue
            end, _ = _parse_google_time(event.get("end"))
            if (end or start) > time_min and start < time_max:
                in_window.append(event)
        return copy.deepcopy(in_window)

    async def list_calendars(self):
        self.calls.append("calendars")
        return copy.deepcopy(self.calendars)

    async def watch_calendar(self, webhook_url, channel_id, token=None):
        self.calls.append("watch")
        self.channels[channel_id] = {"address": webhook_url, "token": token}
        return {
            "kind": "api#channel",
            "id": channel_id,
            "resourceId": f"res-{channel_id}",
            "expiration": self.channel_expiration,
        }

    async def stop_channel(self, channel_id, resource_id):
        self.calls.append("stop")
        self.stopped.append((channel_id, resource_id))


@pytest.fixture
def google():
    return FakeGoogleCalendar()


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
def api_client(session_factory, google):
    from fastapi.testclient import TestClient

    from agency_erp.database import get_db
    from agency_erp.dependencies import get_google_client_factory
    from agency_erp.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_google_client_factory] = lambda: google.client
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {user.api_token}"}
