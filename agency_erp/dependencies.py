"""FastAPI dependencies for shared resources."""

from .services.calendar_sync import ClientFactory
from .services.google_calendar_service import GoogleCalendarClient


def get_google_client_factory() -> ClientFactory:
    """
    Factory building a Google Calendar client from (access_token, calendar_id).
    Overridden in tests to swap in an in-memory calendar.
    """
    return GoogleCalendarClient
