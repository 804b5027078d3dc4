"""Calendar service - Business logic for ERP calendar events"""

import logging
from datetime import datetime

import httpx
from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import CalendarEvent, User
from ...services.google_calendar_service import (
    GoogleCalendarClient,
    GoogleCalendarError,
    get_valid_access_token,
)
from .repository import CalendarEventRepository
from .schemas import CalendarEventCreate, CalendarEventUpdate

logger = logging.getLogger(__name__)

# Request field -> column. Google linkage columns are never writable here.
_FIELD_MAP = {
    "title": "title",
    "date": "date",
    "endDate": "end_date",
    "type": "type",
    "memo": "memo",
    "projectId": "project_id",
}


def month_range(year: int, month: int) -> tuple[datetime, datetime]:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="month must be between 1 and 12")
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


class CalendarEventService:
    """Service layer for calendar event business logic"""

    def __init__(self, db: Session, client_factory=GoogleCalendarClient):
        self.db = db
        self.repo = CalendarEventRepository()
        self.client_factory = client_factory

    def list_month(self, user: User, year: int, month: int) -> list[CalendarEvent]:
        start, end = month_range(year, month)
        return self.repo.get_events_in_range(self.db, user.id, start, end)

    def get_event(self, event_id: int, user: User) -> CalendarEvent:
        event = self.repo.get_event_by_id(self.db, event_id, user.id)
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")
        return event

    def _check_project(self, project_id):
        if project_id is not None and not self.repo.get_project(self.db, project_id):
            raise HTTPException(status_code=404, detail="Project not found")

    def create_event(self, data: CalendarEventCreate, user: User) -> CalendarEvent:
        self._check_project(data.projectId)
        event_data = {column: getattr(data, field) for field, column in _FIELD_MAP.items()}
        event = self.repo.create_event(self.db, user.id, **event_data)
        logger.info(f"📅 Calendar event {event.id} created for user {user.id}")
        return event

    def update_event(self, event_id: int, data: CalendarEventUpdate, user: User) -> CalendarEvent:
        event = self.get_event(event_id, user)
        sent = data.model_dump(exclude_unset=True)

        for required in ("title", "date", "type"):
            if required in sent and sent[required] is None:
                raise HTTPException(status_code=400, detail=f"{required} cannot be cleared")
        if "projectId" in sent:
            self._check_project(sent["projectId"])

        updates = {_FIELD_MAP[field]: value for field, value in sent.items()}
        new_start = updates.get("date", event.date)
        new_end = updates.get("end_date", event.end_date)
        if new_end is not None and new_end < new_start:
            raise HTTPException(status_code=400, detail="endDate must not be before date")

        return self.repo.update_event(self.db, event, **updates)

    async def delete_event(self, event_id: int, user: User) -> None:
        """Delete an event; a linked Google copy is removed on a best-effort basis"""
        event = self.get_event(event_id, user)

        if event.google_event_id:
            token_data = await get_valid_access_token(user.id, self.db)
            if token_data:
                client = self.client_factory(token_data.access_token, token_data.calendar_id)
                try:
                    await client.delete_event(event.google_event_id)
                except (GoogleCalendarError, httpx.HTTPError) as e:
                    logger.warning(
                        f"⚠️ Could not delete Google event {event.google_event_id}: {e}"
                    )

        self.repo.delete_event(self.db, event)
        logger.info(f"🗑️ Calendar event {event_id} deleted for user {user.id}")
