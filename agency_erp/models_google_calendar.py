"""
Google Calendar Integration Models
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class GoogleCalendarChannel(Base):
    """Push-notification channel registered with Google for a user's calendar"""

    __tablename__ = "google_calendar_channels"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    channel_id = Column(String(255), nullable=False, unique=True, index=True)
    resource_id = Column(String(255), nullable=True)  # Assigned by Google, needed to stop the channel
    token = Column(String(255), nullable=False)  # Echoed back in X-Goog-Channel-Token
    expiration = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    # Relationship
    user = relationship("User", back_populates="google_calendar_channels")
