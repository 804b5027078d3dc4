"""Calendar router - FastAPI endpoints for ERP calendar events"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...dependencies import get_google_client_factory
from ...models import User
from ...services.google_calendar_service import calendar_now
from .schemas import (
    CalendarEventCreate,
    CalendarEventListResponse,
    CalendarEventResponse,
    CalendarEventUpdate,
)
from .service import CalendarEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["Calendar"])


def get_calendar_service(
    db: Session = Depends(get_db),
    client_factory=Depends(get_google_client_factory),
) -> CalendarEventService:
    """Dependency injection for CalendarEventService"""
    return CalendarEventService(db, client_factory)


@router.get("", response_model=CalendarEventListResponse)
async def list_calendar_events(
    year: Optional[int] = Query(None, ge=1970, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    current_user: User = Depends(get_current_user),
    service: CalendarEventService = Depends(get_calendar_service),
):
    """Get the current user's events for a month (defaults to this month)"""
    now = calendar_now()
    events = service.list_month(current_user, year or now.year, month or now.month)
    return {"events": [CalendarEventResponse.from_event(e) for e in events]}


@router.post("", response_model=CalendarEventResponse, status_code=201)
async def create_calendar_event(
    data: CalendarEventCreate,
    current_user: User = Depends(get_current_user),
    service: CalendarEventService = Depends(get_calendar_service),
):
    event = service.create_event(data, current_user)
    return CalendarEventResponse.from_event(event)


@router.get("/{event_id}", response_model=CalendarEventResponse)
async def get_calendar_event(
    event_id: int,
    current_user: User = Depends(get_current_user),
    service: CalendarEventService = Depends(get_calendar_service),
):
    return CalendarEventResponse.from_event(service.get_event(event_id, current_user))


@router.patch("/{event_id}", response_model=CalendarEventResponse)
async def update_calendar_event(
    event_id: int,
    data: CalendarEventUpdate,
    current_user: User = Depends(get_current_user),
    service: CalendarEventService = Depends(get_calendar_service),
):
    event = service.update_event(event_id, data, current_user)
    return CalendarEventResponse.from_event(event)


@router.delete("/{event_id}")
async def delete_calendar_event(
    event_id: int,
    current_user: User = Depends(get_current_user),
    service: CalendarEventService = Depends(get_calendar_service),
):
    await service.delete_event(event_id, current_user)
    return {"success": True}
