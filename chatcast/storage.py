import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Generator, Iterator, Optional, Union

from sqlalchemy import create_engine, func, inspect
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from chatcast.config import settings
from chatcast.exceptions import SessionValidationError, InvalidTransitionError, StoreError
from chatcast.utils import format_ts, utc_now

logger = logging.getLogger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# check_same_thread=False is required for SQLite to be shared with the
# threadpool and the reconciler worker thread
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

# expire_on_commit=False keeps returned rows readable after their
# database session is closed (the recorder hands them back to callers)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

TimestampLike = Union[str, datetime]


def _ensure_sqlite_directory() -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not _is_sqlite:
        return
    database = make_url(settings.DATABASE_URL).database
    if not database or database == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(database))
    if not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
        logger.info(f"Created database directory: {directory}")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatcast.models import Message, RecordingSession  # noqa: F401

        _ensure_sqlite_directory()
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    try:
        inspector = inspect(engine)
        for table in ("sessions", "messages"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def store_operation(db: Session, action: str) -> Iterator[None]:
    """Roll back and re-raise SQLAlchemy failures as StoreError."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Store operation failed ({action}): {e}")
        raise StoreError(f"{action} failed: {e}") from e


def _as_ts(value: Optional[TimestampLike]) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return format_ts(value)


def _coerce_status(status) -> str:
    from chatcast.models import SessionStatus

    try:
        return SessionStatus(status).value
    except ValueError:
        valid = ", ".join(s.value for s in SessionStatus)
        raise SessionValidationError(f"Invalid status '{status}'. Must be one of: {valid}")


# =============================================================================
# Session Repository Functions
# =============================================================================

def save_session(
    db: Session,
    session_id: str,
    title: Optional[str] = None,
    status: Optional[str] = None,
    created_at: Optional[TimestampLike] = None,
):
    """
    Create or update a session (upsert with merge).

    For an existing session, title/status left as None keep their stored
    values and created_at is never rewritten. A new session gets status
    'active' unless one is given, and created_at defaults to now.

    Raises:
        SessionValidationError: session_id missing or status unknown
        InvalidTransitionError: status change not allowed by the lifecycle
        StoreError: the database write failed

    Returns:
        The resulting RecordingSession row
    """
    from chatcast.models import RecordingSession, SessionStatus, is_valid_transition

    if not session_id:
        raise SessionValidationError("Session ID is required")
    if status is not None:
        status = _coerce_status(status)

    with store_operation(db, f"save session {session_id}"):
        # Rows already in this db session may be stale, reload the stored status
        existing = (
            db.query(RecordingSession)
            .filter(RecordingSession.session_id == session_id)
            .populate_existing()
            .first()
        )

        if existing is not None:
            new_title = title if title is not None else existing.title
            new_status = status if status is not None else existing.status
            if new_status is not None and not is_valid_transition(existing.status, new_status):
                raise InvalidTransitionError(session_id, existing.status, new_status)

            logger.info(f"Updating session {session_id}: title={new_title}, status={new_status}")
            existing.title = new_title
            existing.status = new_status
            db.commit()
            return existing

        record = RecordingSession(
            session_id=session_id,
            title=title,
            created_at=_as_ts(created_at) or format_ts(utc_now()),
            status=status or SessionStatus.ACTIVE.value,
        )
        logger.info(f"Creating session {session_id}: title={title}, status={record.status}")
        db.add(record)
        db.commit()
        return record


def complete_if_active(db: Session, session_id: str) -> bool:
    """
    Mark a session completed only if its stored status is still 'active'.

    The check and the write are a single UPDATE, so a session paused or
    completed by someone else in the meantime is left as it is.

    Returns:
        True if the row was changed, False otherwise
    """
    from chatcast.models import RecordingSession, SessionStatus

    with store_operation(db, f"complete session {session_id}"):
        updated = (
            db.query(RecordingSession)
            .filter(
                RecordingSession.session_id == session_id,
                RecordingSession.status == SessionStatus.ACTIVE.value,
            )
            .update({RecordingSession.status: SessionStatus.COMPLETED.value}, synchronize_session=False)
        )
        db.commit()

    if updated != 1:
        logger.info(f"Session {session_id} no longer active, left unchanged")
    return updated == 1


def get_session(db: Session, session_id: str):
    """
    Retrieve a session by its ID.

    Returns:
        RecordingSession if found, None otherwise
    """
    from chatcast.models import RecordingSession

    if not session_id:
        return None
    with store_operation(db, f"get session {session_id}"):
        result = (
            db.query(RecordingSession)
            .filter(RecordingSession.session_id == session_id)
            .first()
        )
    logger.debug(f"Session lookup {session_id}: {'found' if result else 'not found'}")
    return result


def list_sessions(db: Session) -> list:
    """Return all sessions, most recently created first."""
    from chatcast.models import RecordingSession

    with store_operation(db, "list sessions"):
        return (
            db.query(RecordingSession)
            .order_by(RecordingSession.created_at.desc())
            .all()
        )


def list_sessions_by_status(db: Session, status: Optional[str]) -> list:
    """Return sessions with the given status; None selects sessions whose status is unset."""
    from chatcast.models import RecordingSession

    query = db.query(RecordingSession)
    if status is None:
        query = query.filter(RecordingSession.status.is_(None))
    else:
        query = query.filter(RecordingSession.status == _coerce_status(status))

    with store_operation(db, f"list sessions with status {status}"):
        return query.order_by(RecordingSession.created_at.desc()).all()


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(
    db: Session,
    chat_id: str,
    date: TimestampLike,
    username: Optional[str],
    message: Optional[str],
    session_id: Optional[str] = None,
    session_title: Optional[str] = None,
):
    """
    Append a recorded message.

    When session_id is given without a session_title, the title is copied
    from the session as it stands now. The copy is never refreshed later.

    Args:
        db: Database session
        chat_id: Originating conversation identifier
        date: Timestamp of the original event (not insertion time)
        username: Display name of the sender
        message: Body text
        session_id: Recording session the message belongs to
        session_title: Session title snapshot

    Returns:
        The new Message row, with its sequence id assigned
    """
    from chatcast.models import Message

    if session_id and session_title is None:
        session = get_session(db, session_id)
        session_title = session.title if session else None

    with store_operation(db, f"save message for session {session_id}"):
        row = Message(
            chat_id=str(chat_id),
            session_id=session_id or None,
            session_title=session_title,
            date=_as_ts(date),
            username=username,
            message=message,
        )
        db.add(row)
        db.commit()
    logger.info(f"Message {row.id} saved for chat {chat_id}, session {session_id}")
    return row


def get_messages(db: Session, chat_id: str = "all") -> list:
    """Return messages for one chat, or every message when chat_id is 'all'."""
    from chatcast.models import Message

    query = db.query(Message)
    if chat_id and chat_id != "all":
        query = query.filter(Message.chat_id == str(chat_id))

    with store_operation(db, f"get messages for chat {chat_id}"):
        return query.order_by(Message.date.asc(), Message.id.asc()).all()


def get_messages_by_session(db: Session, session_id: str) -> list:
    """Return the messages of a session in chronological order."""
    from chatcast.models import Message

    with store_operation(db, f"get messages for session {session_id}"):
        return (
            db.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.date.asc(), Message.id.asc())
            .all()
        )


def get_latest_message_for_session(db: Session, session_id: str):
    """Return the most recent message of a session, or None."""
    from chatcast.models import Message

    with store_operation(db, f"get latest message for session {session_id}"):
        return (
            db.query(Message)
            .filter(Message.session_id == session_id)
            .order_by(Message.date.desc(), Message.id.desc())
            .first()
        )


def get_unique_chat_ids(db: Session) -> list[str]:
    from chatcast.models import Message

    with store_operation(db, "get unique chat ids"):
        rows = db.query(Message.chat_id).distinct().order_by(Message.chat_id).all()
    return [row.chat_id for row in rows]


def get_unique_session_ids(db: Session) -> list[str]:
    """Distinct non-null session ids seen on messages, most recently active first."""
    from chatcast.models import Message

    with store_operation(db, "get unique session ids"):
        rows = (
            db.query(Message.session_id)
            .filter(Message.session_id.isnot(None))
            .group_by(Message.session_id)
            .order_by(func.max(Message.date).desc())
            .all()
        )
    return [row.session_id for row in rows]


def count_records(db: Session) -> dict:
    """Row counts for both tables."""
    from chatcast.models import Message, RecordingSession

    with store_operation(db, "count records"):
        messages = db.query(func.count(Message.id)).scalar() or 0
        sessions = db.query(func.count(RecordingSession.session_id)).scalar() or 0
    return {"messages": messages, "sessions": sessions}
