"""
Session status reconciliation.

Sessions left "active" after a crash or an abandoned recording are completed
once they have been quiet for long enough. Paused and completed sessions are
never touched by the sweep. The repair passes fill in statuses and session
rows that only the message log knows about.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from chatcast import storage
from chatcast.exceptions import ChatcastError
from chatcast.metrics import record_reconciled_sessions
from chatcast.models import SessionStatus
from chatcast.utils import as_utc, parse_ts, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    checked: int = 0
    updated: int = 0
    repaired: int = 0


class SessionReconciler:
    """
    Completes stale active sessions.

    An active session is stale when its latest message is older than
    idle_timeout, or, when it has no messages, when it was created more than
    empty_timeout ago. Sweeps are serialised: reconcile_once() waits for a
    running sweep, run_if_idle() skips instead.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        idle_timeout: timedelta = timedelta(hours=1),
        empty_timeout: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.idle_timeout = idle_timeout
        self.empty_timeout = empty_timeout
        self._clock = clock
        self._sweep_lock = threading.Lock()

    def is_stale(self, db: Session, session, now: datetime) -> bool:
        latest = storage.get_latest_message_for_session(db, session.session_id)
        if latest is not None:
            last_activity = parse_ts(latest.date)
            if last_activity is not None:
                return now - last_activity > self.idle_timeout

        created = parse_ts(session.created_at)
        if created is None:
            # No usable timestamp at all, nothing shows the session is alive
            return True
        return now - created > self.empty_timeout

    def _sweep(self, now: Optional[datetime]) -> ReconcileResult:
        now = as_utc(now) if now is not None else self._clock()
        with self._session_factory() as db:
            sessions = storage.list_sessions_by_status(db, SessionStatus.ACTIVE.value)
            result = ReconcileResult(checked=len(sessions))

            for session in sessions:
                session_id = session.session_id
                try:
                    if not self.is_stale(db, session, now):
                        continue
                    # Only completes the row if it is still active in the store
                    if storage.complete_if_active(db, session_id):
                        result.updated += 1
                        logger.info(f"Session {session_id} marked completed after inactivity")
                except ChatcastError as e:
                    logger.error(f"Failed to reconcile session {session_id}: {e}")

        record_reconciled_sessions(result.updated)
        return result

    def reconcile_once(self, now: Optional[datetime] = None) -> ReconcileResult:
        """Run one sweep over active sessions and report how many were checked and completed."""
        with self._sweep_lock:
            result = self._sweep(now)
        logger.info(f"Session status check: checked {result.checked}, updated {result.updated}")
        return result

    def run_if_idle(self) -> Optional[ReconcileResult]:
        """Run a sweep unless one is already in progress, in which case return None."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Session status check already running, skipping")
            return None
        try:
            return self._sweep(None)
        finally:
            self._sweep_lock.release()

    def repair_unset_statuses(self) -> int:
        """Mark sessions whose status was never set as completed."""
        repaired = 0
        with self._session_factory() as db:
            for session in storage.list_sessions_by_status(db, None):
                try:
                    storage.save_session(db, session.session_id, status=SessionStatus.COMPLETED.value)
                    repaired += 1
                except ChatcastError as e:
                    logger.error(f"Failed to repair status of session {session.session_id}: {e}")
        if repaired:
            logger.info(f"Repaired {repaired} sessions with unset status")
        return repaired

    def repair_orphan_sessions(self) -> int:
        """
        Create completed session rows for session ids known only from messages.

        The title comes from the first message carrying a title snapshot and
        created_at from the earliest message.
        """
        repaired = 0
        with self._session_factory() as db:
            for session_id in storage.get_unique_session_ids(db):
                try:
                    if storage.get_session(db, session_id) is not None:
                        continue
                    messages = storage.get_messages_by_session(db, session_id)
                    if not messages:
                        continue
                    title = next((m.session_title for m in messages if m.session_title), None)
                    storage.save_session(
                        db,
                        session_id,
                        title=title,
                        status=SessionStatus.COMPLETED.value,
                        created_at=messages[0].date,
                    )
                    repaired += 1
                except ChatcastError as e:
                    logger.error(f"Failed to restore session {session_id}: {e}")
        if repaired:
            logger.info(f"Restored {repaired} sessions from the message log")
        return repaired

    def fix_all(self, now: Optional[datetime] = None) -> ReconcileResult:
        """Run both repair passes, then a sweep."""
        with self._sweep_lock:
            repaired = self.repair_unset_statuses() + self.repair_orphan_sessions()
            result = self._sweep(now)
        result.repaired = repaired
        logger.info(
            f"Session fix-up: checked {result.checked}, updated {result.updated}, repaired {repaired}"
        )
        return result


class ReconcileScheduler:
    """
    Runs the reconciler once at start and then every interval seconds.

    Each sweep runs in a worker thread. stop() cancels the timer and waits for
    a sweep that is already running instead of abandoning it.
    """

    def __init__(self, reconciler: SessionReconciler, interval_seconds: float):
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Session status check scheduled every {self._interval} seconds")

    async def _run(self) -> None:
        while True:
            self._current = asyncio.ensure_future(asyncio.to_thread(self._reconciler.run_if_idle))
            try:
                result = await asyncio.shield(self._current)
            except ChatcastError as e:
                logger.error(f"Error in periodic session status check: {e}")
            else:
                if result is not None and result.updated > 0:
                    logger.info(
                        f"Periodic session check: checked {result.checked}, updated {result.updated}"
                    )
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        if self._current is not None and not self._current.done():
            logger.info("Waiting for in-flight session status check to finish")
            try:
                await self._current
            except ChatcastError as e:
                logger.error(f"Error in final session status check: {e}")
        logger.info("Session status check stopped")
