"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import Column, Integer, String, Text

from chatcast.storage import Base


class SessionStatus(str, Enum):
    """Lifecycle status of a recording session."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


# completed is terminal
ALLOWED_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.PAUSED, SessionStatus.COMPLETED},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.COMPLETED},
    SessionStatus.COMPLETED: set(),
}


def is_valid_transition(current: Optional[str], requested: str) -> bool:
    """
    Check a status change against the session lifecycle.

    An unset current status may take any value (first assignment or repair),
    and re-writing the same status is always allowed.
    """
    if current is None or current == requested:
        return True
    try:
        current_status = SessionStatus(current)
        requested_status = SessionStatus(requested)
    except ValueError:
        return False
    return requested_status in ALLOWED_TRANSITIONS[current_status]


class RecordingSession(Base):
    """
    SQLAlchemy model for recording session metadata.

    Table: sessions
    Primary Key: session_id
    created_at is written on insert only.
    """
    __tablename__ = "sessions"

    session_id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=True)
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    status = Column(String, nullable=True, index=True)


class Message(Base):
    """
    SQLAlchemy model for recorded chat messages.

    Table: messages
    Rows are append-only. session_id is a weak reference (no foreign key), and
    session_title is a snapshot of the session title at write time: renaming a
    session does not rewrite the messages already recorded for it.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)
    session_title = Column(String, nullable=True)
    date = Column(String, nullable=False, index=True)  # ISO-8601 UTC string of the original event
    username = Column(String, nullable=True)
    message = Column(Text, nullable=True)
