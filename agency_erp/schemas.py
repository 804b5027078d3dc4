from typing import List, Optional

from pydantic import BaseModel, Field


# Google Calendar Sync Schemas
class SyncRequest(BaseModel):
    action: str = Field(..., pattern="^(push|pull|full)$")


class SyncResultsResponse(BaseModel):
    pushed: int = 0
    pulled: int = 0
    updated: int = 0
    errors: List[str] = []


class SyncResponse(BaseModel):
    success: bool
    results: SyncResultsResponse


class SyncStatusResponse(BaseModel):
    connected: bool
    calendarId: str
    syncedEventsCount: int


class AutoSyncRequest(BaseModel):
    enabled: bool


class AutoSyncResponse(BaseModel):
    success: bool
    message: str
    expiration: Optional[str] = None


class ConnectResponse(BaseModel):
    authorization_url: str


class GoogleCalendarInfo(BaseModel):
    id: str
    summary: Optional[str] = None
    primary: bool = False
    backgroundColor: Optional[str] = None


class GoogleCalendarListResponse(BaseModel):
    calendars: List[GoogleCalendarInfo]
    selectedCalendarId: str


class CalendarSelectionRequest(BaseModel):
    calendarId: str = Field(..., min_length=1, max_length=500)


class CalendarSelectionResponse(BaseModel):
    success: bool
    calendarId: str
