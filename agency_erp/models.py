from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Calendar event categories used across the ERP
EVENT_TYPES = (
    "PROJECT",  # project milestone
    "CONTENT",  # content upload
    "SETTLEMENT",
    "PAYMENT",
    "INVOICE",
    "MEETING",
    "DEADLINE",
    "CUSTOM",
)
DEFAULT_EVENT_TYPE = "CUSTOM"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    api_token = Column(String(255), unique=True, index=True, nullable=True)  # Bearer token for the API

    # Google Calendar credentials (access/refresh tokens stored encrypted)
    google_access_token = Column(Text, nullable=True)
    google_refresh_token = Column(Text, nullable=True)
    google_token_expiry = Column(DateTime, nullable=True)
    google_calendar_id = Column(String(500), nullable=True)  # null means "primary"
    google_sync_enabled = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now())

    calendar_events = relationship(
        "CalendarEvent", back_populates="user", cascade="all, delete-orphan"
    )
    google_calendar_channels = relationship(
        "GoogleCalendarChannel", back_populates="user", cascade="all, delete-orphan"
    )


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    __table_args__ = (Index("ix_calendar_events_user_google", "user_id", "google_event_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime, nullable=True)  # null means a single-day event
    type = Column(String(50), default=DEFAULT_EVENT_TYPE, nullable=False)
    memo = Column(Text, nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)

    # Google Calendar linkage - written by the sync engine only
    google_event_id = Column(String(500), nullable=True)
    synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="calendar_events")
    project = relationship("Project")
