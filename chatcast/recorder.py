"""
Recording state machine.

Decides whether an inbound chat event is persisted and drives the status of
the session being recorded. There is at most one in-flight session per
process. Every transition and every recorded event runs under one lock, so a
stop can never interleave with a message write.

    idle --start--> awaiting_title --title--> active <--pause/resume--> paused
      ^                                          |                        |
      +-------------------stop-------------------+------------------------+
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from chatcast import storage
from chatcast.exceptions import InvalidTransitionError, SessionValidationError, StoreError
from chatcast.metrics import record_event_outcome, record_session_transition
from chatcast.models import SessionStatus
from chatcast.utils import format_ts, generate_session_id, utc_now

logger = logging.getLogger(__name__)


class RecorderPhase(str, Enum):
    IDLE = "idle"
    AWAITING_TITLE = "awaiting_title"
    ACTIVE = "active"
    PAUSED = "paused"


class RecordOutcome(str, Enum):
    ACCEPTED = "accepted"
    DROPPED_PAUSED = "dropped_paused"
    IGNORED = "ignored"
    TITLE_ASSIGNED = "title_assigned"
    TITLE_REJECTED = "title_rejected"


@dataclass(frozen=True)
class RecorderState:
    """Phase plus the session it applies to; session_id is None only when idle."""
    phase: RecorderPhase
    session_id: Optional[str] = None


@dataclass(frozen=True)
class RecordResult:
    outcome: RecordOutcome
    session_id: Optional[str] = None
    message_id: Optional[int] = None


IDLE = RecorderState(RecorderPhase.IDLE)


class RecordingStateMachine:
    """
    Single-process recorder.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        clock: Returns the current time (aware UTC datetime)
        id_factory: Returns a new session id
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = generate_session_id,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._id_factory = id_factory
        self._state = IDLE
        self._lock = threading.RLock()

    @property
    def state(self) -> RecorderState:
        return self._state

    def snapshot(self) -> RecorderState:
        with self._lock:
            return self._state

    def reset(self) -> None:
        """Force the recorder back to idle without touching the store."""
        with self._lock:
            if self._state.phase != RecorderPhase.IDLE:
                logger.warning(f"Recorder reset while {self._state.phase.value} ({self._state.session_id})")
            self._state = IDLE

    def _matches(self, session_id: Optional[str]) -> bool:
        return session_id is None or session_id == self._state.session_id

    def _write_status(self, db: Session, session_id: str, status: SessionStatus):
        """Write the status of an existing session; returns None if the row is gone."""
        if storage.get_session(db, session_id) is None:
            logger.warning(f"Session {session_id} is no longer stored, not writing status {status.value}")
            return None
        return storage.save_session(db, session_id, status=status.value)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def start_session(self) -> str:
        """
        Reserve a new session id and wait for its title.

        A session still active or paused is completed first. If that write
        fails the new session starts anyway and the old row is left for the
        reconciler.
        """
        with self._lock:
            previous = self._state
            if previous.phase in (RecorderPhase.ACTIVE, RecorderPhase.PAUSED):
                logger.info(f"Completing session {previous.session_id} before starting a new one")
                try:
                    with self._session_factory() as db:
                        self._write_status(db, previous.session_id, SessionStatus.COMPLETED)
                    record_session_transition("complete")
                except (StoreError, SessionValidationError) as e:
                    logger.error(f"Could not complete session {previous.session_id}: {e}")
            elif previous.phase == RecorderPhase.AWAITING_TITLE:
                logger.info(f"Discarding untitled session {previous.session_id}")

            session_id = self._id_factory()
            self._state = RecorderState(RecorderPhase.AWAITING_TITLE, session_id)
            logger.info(f"Recording requested, awaiting title for {session_id}")
            return session_id

    def supply_title(self, title: str, session_id: Optional[str] = None):
        """
        Name the reserved session and start recording.

        Raises:
            SessionValidationError: not awaiting a title, wrong session, or blank title
            StoreError: the session row could not be created; the recorder is reset to idle
        """
        with self._lock:
            state = self._state
            if state.phase != RecorderPhase.AWAITING_TITLE:
                raise SessionValidationError("No recording is waiting for a title")
            if not self._matches(session_id):
                raise SessionValidationError(f"Session {session_id} is not awaiting a title")

            title = (title or "").strip()
            if not title:
                raise SessionValidationError("Please enter a valid title for the session")

            try:
                with self._session_factory() as db:
                    session = storage.save_session(
                        db,
                        state.session_id,
                        title=title,
                        status=SessionStatus.ACTIVE.value,
                        created_at=format_ts(self._clock()),
                    )
            except StoreError:
                self._state = IDLE
                raise

            self._state = RecorderState(RecorderPhase.ACTIVE, state.session_id)
            record_session_transition("start")
            logger.info(f"Recording started: {state.session_id} '{title}'")
            return session

    def pause(self, session_id: Optional[str] = None):
        """Suspend recording. Returns the updated session, or None when not active."""
        return self._toggle(RecorderPhase.ACTIVE, RecorderPhase.PAUSED, SessionStatus.PAUSED, "pause", session_id)

    def resume(self, session_id: Optional[str] = None):
        """Continue a paused recording. Returns the updated session, or None when not paused."""
        return self._toggle(RecorderPhase.PAUSED, RecorderPhase.ACTIVE, SessionStatus.ACTIVE, "resume", session_id)

    def _toggle(self, source, target, status, transition, session_id):
        with self._lock:
            state = self._state
            if state.phase != source or not self._matches(session_id):
                logger.info(f"Ignoring {transition}: recorder is {state.phase.value}")
                return None

            # The recorder moves even when the store is unreachable, the caller is told via StoreError
            self._state = RecorderState(target, state.session_id)
            try:
                with self._session_factory() as db:
                    session = self._write_status(db, state.session_id, status)
            except InvalidTransitionError as e:
                # Completed elsewhere (reconciler or manual change): stop following it
                self._state = IDLE if e.current == SessionStatus.COMPLETED.value else state
                raise

            if session is None:
                self._state = IDLE
                return None
            record_session_transition(transition)
            logger.info(f"Recording {transition}d: {state.session_id}")
            return session

    def stop(self, session_id: Optional[str] = None):
        """
        Finish the current recording and return to idle.

        Returns the completed session, or None when nothing was recording.
        The recorder is idle afterwards even if the store write raised.
        """
        with self._lock:
            state = self._state
            if not self._matches(session_id):
                logger.info(f"Ignoring stop for {session_id}: current session is {state.session_id}")
                return None
            if state.phase == RecorderPhase.AWAITING_TITLE:
                logger.info(f"Recording cancelled before a title was given: {state.session_id}")
                self._state = IDLE
                return None
            if state.phase not in (RecorderPhase.ACTIVE, RecorderPhase.PAUSED):
                return None

            try:
                with self._session_factory() as db:
                    session = self._write_status(db, state.session_id, SessionStatus.COMPLETED)
            finally:
                self._state = IDLE

            if session is None:
                return None
            record_session_transition("complete")
            logger.info(f"Recording stopped: {state.session_id}")
            return session

    def set_status(self, session_id: str, status: str):
        """
        Change a session's stored status from outside the recording flow.

        When the session is the one being recorded the recorder follows the
        new status: completed returns it to idle, paused/active pause or
        resume it.

        Raises:
            SessionValidationError: unknown status
            InvalidTransitionError: change not allowed by the lifecycle
            StoreError: the write failed; the recorder is left unchanged
        """
        with self._lock:
            with self._session_factory() as db:
                session = storage.save_session(db, session_id, status=status)

            state = self._state
            if state.session_id == session_id and state.phase in (RecorderPhase.ACTIVE, RecorderPhase.PAUSED):
                if session.status == SessionStatus.COMPLETED.value:
                    self._state = IDLE
                elif session.status == SessionStatus.PAUSED.value:
                    self._state = RecorderState(RecorderPhase.PAUSED, session_id)
                else:
                    self._state = RecorderState(RecorderPhase.ACTIVE, session_id)
                logger.info(f"Recorder now {self._state.phase.value} after manual status change of {session_id}")

            logger.info(f"Session {session_id} status set to {session.status}")
            return session

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def record_event(self, chat_id: str, username: Optional[str], text: Optional[str], event_date: datetime) -> RecordResult:
        """
        Persist an inbound chat event if recording is active.

        While a title is awaited the text is used as the title instead.

        Raises:
            StoreError: the message (or the session row, for a title) could not be written
        """
        with self._lock:
            state = self._state

            if state.phase == RecorderPhase.AWAITING_TITLE:
                try:
                    self.supply_title(text or "")
                except SessionValidationError:
                    result = RecordResult(RecordOutcome.TITLE_REJECTED, state.session_id)
                else:
                    result = RecordResult(RecordOutcome.TITLE_ASSIGNED, state.session_id)

            elif state.phase == RecorderPhase.PAUSED:
                result = RecordResult(RecordOutcome.DROPPED_PAUSED, state.session_id)

            elif state.phase == RecorderPhase.ACTIVE:
                row = None
                with self._session_factory() as db:
                    session = storage.get_session(db, state.session_id)
                    if session is not None and session.status != SessionStatus.COMPLETED.value:
                        row = storage.create_message(
                            db,
                            chat_id=chat_id,
                            date=event_date,
                            username=username,
                            message=text,
                            session_id=state.session_id,
                            session_title=session.title,
                        )

                if row is None:
                    logger.warning(f"Session {state.session_id} was completed or removed elsewhere, recorder now idle")
                    self._state = IDLE
                    result = RecordResult(RecordOutcome.IGNORED, state.session_id)
                else:
                    result = RecordResult(RecordOutcome.ACCEPTED, state.session_id, row.id)

            else:
                result = RecordResult(RecordOutcome.IGNORED)

            record_event_outcome(result.outcome.value)
            logger.debug(f"Event from chat {chat_id}: {result.outcome.value}")
            return result
