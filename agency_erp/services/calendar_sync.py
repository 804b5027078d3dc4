"""
Calendar Sync Engine
Reconciles a user's ERP calendar events with their Google Calendar.

Push writes local events to Google (create when unlinked, update when linked).
Pull imports Google events that were not written by the ERP. A full sync runs
push before pull so freshly pushed events already carry the ERP marker when the
pull phase filters them out. Every event is processed sequentially and a
failure on one event is recorded without stopping the batch.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..domain.calendar.repository import CalendarEventRepository
from ..models import User
from .google_calendar_service import (
    UNTITLED_EVENT,
    GoogleCalendarClient,
    GoogleCalendarNotConnectedError,
    calendar_now,
    erp_event_to_google_event,
    get_valid_access_token,
    google_event_to_erp_event,
    is_erp_authored,
    utcnow,
)

logger = logging.getLogger(__name__)

SYNC_DIRECTIONS = ("push", "pull", "full")

ClientFactory = Callable[[str, str], GoogleCalendarClient]


@dataclass
class SyncResults:
    pushed: int = 0
    pulled: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def start_of_month(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(value: datetime, months: int) -> datetime:
    """Shift a first-of-month datetime by a number of months"""
    month_index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=month_index // 12, month=month_index % 12 + 1)


def sync_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Rolling reconciliation window [start of last month, start of the month after next)"""
    month_start = start_of_month(now or calendar_now())
    return add_months(month_start, -1), add_months(month_start, 2)


def _describe(error: Exception) -> str:
    return str(error) or error.__class__.__name__


class CalendarSyncEngine:
    """Runs push/pull phases for a single user against one Google calendar"""

    def __init__(self, db: Session, user_id: int, client: GoogleCalendarClient):
        self.db = db
        self.user_id = user_id
        self.client = client
        self.repo = CalendarEventRepository()

    async def push(self, time_min: datetime, time_max: datetime, results: SyncResults) -> None:
        events = self.repo.get_events_in_range(self.db, self.user_id, time_min, time_max)
        logger.info(f"📤 Pushing {len(events)} events to Google Calendar for user {self.user_id}")

        for event in events:
            event_id, title = event.id, event.title
            try:
                body = erp_event_to_google_event(event)
                if event.google_event_id:
                    await self.client.update_event(event.google_event_id, body)
                    self.repo.mark_synced(self.db, event, utcnow())
                    results.updated += 1
                else:
                    created = await self.client.create_event(body)
                    self.repo.link_google_event(self.db, event, created["id"], utcnow())
                    results.pushed += 1
            except Exception as e:
                self.db.rollback()
                logger.warning(f"⚠️ Push failed for event {event_id}: {_describe(e)}")
                results.errors.append(f'Push failed for "{title}": {_describe(e)}')

    async def pull(self, time_min: datetime, time_max: datetime, results: SyncResults) -> None:
        # A failure to list is a whole-call failure and propagates
        remote_events = await self.client.list_events(time_min, time_max)
        logger.info(
            f"📥 Pulled {len(remote_events)} Google events for user {self.user_id}"
        )

        for remote in remote_events:
            if is_erp_authored(remote):
                continue

            summary = remote.get("summary") or UNTITLED_EVENT
            try:
                remote_id = remote["id"]
                fields = google_event_to_erp_event(remote)
                # Google lists events overlapping the window, not only those starting in it
                if not time_min <= fields["date"] < time_max:
                    logger.debug(f"Skipping Google event {remote_id}: starts outside the sync window")
                    continue

                existing = self.repo.get_event_by_google_id(self.db, self.user_id, remote_id)
                if existing:
                    self.repo.apply_remote_changes(self.db, existing, utcnow(), **fields)
                    results.updated += 1
                else:
                    self.repo.create_linked_event(
                        self.db, self.user_id, remote_id, utcnow(), **fields
                    )
                    results.pulled += 1
            except Exception as e:
                self.db.rollback()
                logger.warning(f"⚠️ Pull failed for Google event {remote.get('id')}: {_describe(e)}")
                results.errors.append(f'Pull failed for "{summary}": {_describe(e)}')

    async def run(self, direction: str, time_min: datetime, time_max: datetime) -> SyncResults:
        if direction not in SYNC_DIRECTIONS:
            raise ValueError(f"Unknown sync direction: {direction}")

        results = SyncResults()
        if direction in ("push", "full"):
            await self.push(time_min, time_max, results)
        if direction in ("pull", "full"):
            await self.pull(time_min, time_max, results)
        return results


async def sync_calendar(
    db: Session,
    user: User,
    direction: str,
    client_factory: ClientFactory = GoogleCalendarClient,
    now: Optional[datetime] = None,
) -> SyncResults:
    """
    Synchronize a user's events with Google Calendar.

    Raises:
        ValueError: direction is not push, pull or full
        GoogleCalendarNotConnectedError: no valid token for the user
        GoogleCalendarAPIError / httpx.HTTPError: Google could not be listed
    """
    if direction not in SYNC_DIRECTIONS:
        raise ValueError(f"Unknown sync direction: {direction}")

    token_data = await get_valid_access_token(user.id, db)
    if not token_data:
        raise GoogleCalendarNotConnectedError("Google Calendar not connected or token expired")

    time_min, time_max = sync_window(now)
    client = client_factory(token_data.access_token, token_data.calendar_id)
    engine = CalendarSyncEngine(db, user.id, client)

    logger.info(
        f"🔄 Starting {direction} sync for user {user.id} ({time_min:%Y-%m-%d} - {time_max:%Y-%m-%d})"
    )
    results = await engine.run(direction, time_min, time_max)
    logger.info(
        f"✅ Sync finished for user {user.id}: pushed={results.pushed} pulled={results.pulled} "
        f"updated={results.updated} errors={len(results.errors)}"
    )
    return results
