"""
Read-side session summaries.

Joins the session registry with the message log into display-ready details.
Nothing here writes: a status inferred from messages is only reported, the
persisted repair is SessionReconciler.repair_orphan_sessions.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatcast import storage
from chatcast.models import Message, SessionStatus
from chatcast.utils import parse_ts

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "unknown"


@dataclass
class SessionDetail:
    session_id: str
    title: str
    status: str
    created_at: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    participants: list[str] = field(default_factory=list)
    chat_ids: list[str] = field(default_factory=list)
    message_count: int = 0


def has_session_data(detail: SessionDetail) -> bool:
    """True when the id is known to the session registry or has messages."""
    return detail.created_at is not None or detail.message_count > 0


def get_session_details(db: Session, session_id: str) -> SessionDetail:
    """
    Build the summary of one session.

    - start_date: earliest message date, else the session's created_at
    - end_date: latest message date, else None
    - title: stored title, else the first title snapshot on its messages, else the id
    - status: stored status, else 'completed' when messages exist, else 'unknown'
    """
    session = storage.get_session(db, session_id)

    with storage.store_operation(db, f"aggregate session {session_id}"):
        first_date, last_date, message_count = (
            db.query(func.min(Message.date), func.max(Message.date), func.count(Message.id))
            .filter(Message.session_id == session_id)
            .one()
        )

        participants = [
            row.username
            for row in db.query(Message.username)
            .filter(Message.session_id == session_id, Message.username.isnot(None))
            .group_by(Message.username)
            .order_by(func.min(Message.id))
            .all()
        ]

        chat_ids = [
            row.chat_id
            for row in db.query(Message.chat_id)
            .filter(Message.session_id == session_id)
            .group_by(Message.chat_id)
            .order_by(func.min(Message.id))
            .all()
        ]

        cached_title = (
            db.query(Message.session_title)
            .filter(
                Message.session_id == session_id,
                Message.session_title.isnot(None),
                Message.session_title != "",
            )
            .order_by(Message.id.asc())
            .limit(1)
            .scalar()
        )

    if session is not None and session.title:
        title = session.title
    else:
        title = cached_title or session_id

    if session is not None and session.status:
        status = session.status
    elif message_count:
        status = SessionStatus.COMPLETED.value
    else:
        status = UNKNOWN_STATUS

    return SessionDetail(
        session_id=session_id,
        title=title,
        status=status,
        created_at=session.created_at if session is not None else None,
        start_date=first_date or (session.created_at if session is not None else None),
        end_date=last_date,
        participants=participants,
        chat_ids=chat_ids,
        message_count=message_count or 0,
    )


def _start_sort_key(detail: SessionDetail):
    # Newest first, sessions without a start date last
    start = parse_ts(detail.start_date)
    return (start is None, -start.timestamp() if start else 0.0)


def list_session_details(db: Session) -> list[SessionDetail]:
    """
    Summaries of every known session, newest start first.

    Session ids come from the session registry, or from the message log when
    the registry is empty.
    """
    session_ids = [s.session_id for s in storage.list_sessions(db)]
    if not session_ids:
        session_ids = storage.get_unique_session_ids(db)
        logger.debug(f"Session registry empty, using {len(session_ids)} ids from messages")

    details = [get_session_details(db, session_id) for session_id in session_ids]
    details.sort(key=_start_sort_key)
    return details
