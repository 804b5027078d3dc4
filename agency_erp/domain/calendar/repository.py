"""Calendar event repository - Database operations for calendar events"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import CalendarEvent, Project


class CalendarEventRepository:
    """Repository for calendar event database operations"""

    @staticmethod
    def get_events_in_range(
        db: Session, user_id: int, start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        """Get a user's events with start <= date < end, oldest first"""
        return (
            db.query(CalendarEvent)
            .options(joinedload(CalendarEvent.project))
            .filter(
                CalendarEvent.user_id == user_id,
                CalendarEvent.date >= start,
                CalendarEvent.date < end,
            )
            .order_by(CalendarEvent.date.asc(), CalendarEvent.id.asc())
            .all()
        )

    @staticmethod
    def get_event_by_id(db: Session, event_id: int, user_id: int) -> Optional[CalendarEvent]:
        return (
            db.query(CalendarEvent)
            .options(joinedload(CalendarEvent.project))
            .filter(CalendarEvent.id == event_id, CalendarEvent.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_event_by_google_id(
        db: Session, user_id: int, google_event_id: str
    ) -> Optional[CalendarEvent]:
        return (
            db.query(CalendarEvent)
            .filter(
                CalendarEvent.user_id == user_id,
                CalendarEvent.google_event_id == google_event_id,
            )
            .first()
        )

    @staticmethod
    def get_project(db: Session, project_id: int) -> Optional[Project]:
        return db.query(Project).filter(Project.id == project_id).first()

    @staticmethod
    def create_event(db: Session, user_id: int, **event_data) -> CalendarEvent:
        """Create a new calendar event"""
        event = CalendarEvent(user_id=user_id, **event_data)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def update_event(db: Session, event: CalendarEvent, **updates) -> CalendarEvent:
        """Update an event with the provided fields (None clears a nullable field)"""
        for key, value in updates.items():
            if hasattr(event, key):
                setattr(event, key, value)

        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def delete_event(db: Session, event: CalendarEvent) -> None:
        db.delete(event)
        db.commit()

    # Google Calendar linkage - used by the sync engine only
    @staticmethod
    def link_google_event(
        db: Session, event: CalendarEvent, google_event_id: str, synced_at: datetime
    ) -> None:
        event.google_event_id = google_event_id
        event.synced_at = synced_at
        db.commit()

    @staticmethod
    def mark_synced(db: Session, event: CalendarEvent, synced_at: datetime) -> None:
        event.synced_at = synced_at
        db.commit()

    @staticmethod
    def apply_remote_changes(
        db: Session, event: CalendarEvent, synced_at: datetime, **fields
    ) -> None:
        """Overwrite title/date/end_date/memo from Google"""
        for key in ("title", "date", "end_date", "memo"):
            setattr(event, key, fields[key])
        event.synced_at = synced_at
        db.commit()

    @staticmethod
    def create_linked_event(
        db: Session, user_id: int, google_event_id: str, synced_at: datetime, **event_data
    ) -> CalendarEvent:
        event = CalendarEvent(
            user_id=user_id,
            google_event_id=google_event_id,
            synced_at=synced_at,
            **event_data,
        )
        db.add(event)
        db.commit()
        return event

    @staticmethod
    def count_linked_events(db: Session, user_id: int) -> int:
        return (
            db.query(func.count(CalendarEvent.id))
            .filter(CalendarEvent.user_id == user_id, CalendarEvent.google_event_id.isnot(None))
            .scalar()
        )

    @staticmethod
    def clear_google_links(db: Session, user_id: int) -> int:
        """Unlink every event of a user from Google. Caller commits"""
        return (
            db.query(CalendarEvent)
            .filter(CalendarEvent.user_id == user_id)
            .update(
                {CalendarEvent.google_event_id: None, CalendarEvent.synced_at: None},
                synchronize_session="fetch",
            )
        )
