"""Calendar domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator

from ...config import CALENDAR_TIMEZONE
from ...models import EVENT_TYPES


def _validate_event_type(v):
    if v is None:
        return v
    v = v.upper()
    if v not in EVENT_TYPES:
        raise ValueError(f"type must be one of: {', '.join(EVENT_TYPES)}")
    return v


def _to_calendar_local(v):
    """Store instants as naive wall-clock time in the agency's calendar timezone"""
    if v is not None and v.tzinfo is not None:
        return v.astimezone(ZoneInfo(CALENDAR_TIMEZONE)).replace(tzinfo=None)
    return v


class CalendarEventCreate(BaseModel):
    """Schema for creating a calendar event"""

    title: str = Field(..., min_length=1, max_length=255)
    date: datetime
    endDate: Optional[datetime] = None
    type: str = "CUSTOM"
    memo: Optional[str] = None
    projectId: Optional[int] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _validate_event_type(v)

    @field_validator("date", "endDate")
    @classmethod
    def normalize_dates(cls, v):
        return _to_calendar_local(v)

    @model_validator(mode="after")
    def check_dates(self):
        if self.endDate is not None and self.endDate < self.date:
            raise ValueError("endDate must not be before date")
        return self


class CalendarEventUpdate(BaseModel):
    """Schema for updating a calendar event; only fields that are sent are changed"""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    date: Optional[datetime] = None
    endDate: Optional[datetime] = None
    type: Optional[str] = None
    memo: Optional[str] = None
    projectId: Optional[int] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _validate_event_type(v)

    @field_validator("date", "endDate")
    @classmethod
    def normalize_dates(cls, v):
        return _to_calendar_local(v)


class CalendarEventResponse(BaseModel):
    """Schema for calendar event response"""

    id: int
    title: str
    date: datetime
    endDate: Optional[datetime]
    type: str
    memo: Optional[str]
    projectId: Optional[int]
    projectName: Optional[str]
    googleEventId: Optional[str]
    syncedAt: Optional[datetime]
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, event) -> "CalendarEventResponse":
        return cls(
            id=event.id,
            title=event.title,
            date=event.date,
            endDate=event.end_date,
            type=event.type,
            memo=event.memo,
            projectId=event.project_id,
            projectName=event.project.name if event.project else None,
            googleEventId=event.google_event_id,
            syncedAt=event.synced_at,
            created_at=event.created_at,
        )


class CalendarEventListResponse(BaseModel):
    events: list[CalendarEventResponse]
