"""
Tests for the recording state machine.

Tests cover:
- start / title / pause / resume / stop transitions and their stored status
- Illegal-state commands are no-ops
- Event gating per phase
- Store failures surface while the recorder stays usable
"""

import itertools
import threading
from datetime import timedelta

import pytest

from chatcast import storage
from chatcast.exceptions import InvalidTransitionError, SessionValidationError, StoreError
from chatcast.models import Message, RecordingSession
from chatcast.reconciler import SessionReconciler
from chatcast.recorder import RecorderPhase, RecordOutcome, RecordingStateMachine
from chatcast.storage import SessionLocal
from chatcast.utils import format_ts

from conftest import NOW


@pytest.fixture
def recorder(schema, clock):
    ids = (f"session_test_{n}" for n in itertools.count(1))
    return RecordingStateMachine(SessionLocal, clock=clock, id_factory=lambda: next(ids))


@pytest.fixture
def active(recorder):
    session_id = recorder.start_session()
    recorder.supply_title("Standup", session_id)
    return session_id


def stored_status(session_id):
    with SessionLocal() as db:
        session = storage.get_session(db, session_id)
        return session.status if session else None


def message_count():
    with SessionLocal() as db:
        return db.query(Message).count()


def record(recorder, text="hi", user="alice"):
    return recorder.record_event("c1", user, text, NOW)


def fail_store(*args, **kwargs):
    raise StoreError("database is locked")


class TestStart:

    def test_start_awaits_title_without_writing(self, recorder):
        session_id = recorder.start_session()

        assert recorder.state.phase == RecorderPhase.AWAITING_TITLE
        assert recorder.state.session_id == session_id
        assert stored_status(session_id) is None

    def test_title_creates_active_session(self, recorder, clock):
        session_id = recorder.start_session()

        session = recorder.supply_title("  Standup  ")

        assert session.title == "Standup"
        assert session.status == "active"
        assert session.created_at == format_ts(clock.now)
        assert recorder.state.phase == RecorderPhase.ACTIVE
        assert recorder.state.session_id == session_id

    @pytest.mark.parametrize("title", ["", "   ", "\n"])
    def test_blank_title_rejected_without_state_change(self, recorder, title):
        session_id = recorder.start_session()

        with pytest.raises(SessionValidationError):
            recorder.supply_title(title)

        assert recorder.state.phase == RecorderPhase.AWAITING_TITLE
        assert stored_status(session_id) is None

    def test_title_outside_awaiting_rejected(self, recorder):
        with pytest.raises(SessionValidationError):
            recorder.supply_title("Standup")

    def test_title_for_other_session_rejected(self, recorder):
        recorder.start_session()
        with pytest.raises(SessionValidationError):
            recorder.supply_title("Standup", session_id="session_other")

    def test_title_store_failure_resets_to_idle(self, recorder, monkeypatch):
        recorder.start_session()
        monkeypatch.setattr(storage, "save_session", fail_store)

        with pytest.raises(StoreError):
            recorder.supply_title("Standup")

        assert recorder.state.phase == RecorderPhase.IDLE

    def test_start_while_active_completes_previous(self, recorder, active):
        new_id = recorder.start_session()

        assert new_id != active
        assert stored_status(active) == "completed"
        assert recorder.state.phase == RecorderPhase.AWAITING_TITLE

    def test_start_while_awaiting_discards_reservation(self, recorder):
        first = recorder.start_session()
        second = recorder.start_session()

        assert first != second
        assert recorder.state.session_id == second
        assert stored_status(first) is None


class TestPauseResume:

    def test_pause_and_resume(self, recorder, active):
        paused = recorder.pause()
        assert paused.status == "paused"
        assert recorder.state.phase == RecorderPhase.PAUSED
        assert stored_status(active) == "paused"

        resumed = recorder.resume(active)
        assert resumed.status == "active"
        assert recorder.state.phase == RecorderPhase.ACTIVE
        assert stored_status(active) == "active"

    def test_pause_when_not_active_is_noop(self, recorder, active):
        recorder.pause()
        assert recorder.pause() is None
        assert stored_status(active) == "paused"

    def test_resume_when_not_paused_is_noop(self, recorder, active):
        assert recorder.resume() is None
        assert recorder.state.phase == RecorderPhase.ACTIVE
        assert stored_status(active) == "active"

    def test_commands_when_idle_are_noops(self, recorder):
        assert recorder.pause() is None
        assert recorder.resume() is None
        assert recorder.stop() is None
        assert recorder.state.phase == RecorderPhase.IDLE

    def test_pause_for_other_session_is_noop(self, recorder, active):
        assert recorder.pause("session_other") is None
        assert stored_status(active) == "active"

    def test_pause_store_failure_surfaces_after_transition(self, recorder, active, monkeypatch):
        monkeypatch.setattr(storage, "save_session", fail_store)

        with pytest.raises(StoreError):
            recorder.pause()

        assert recorder.state.phase == RecorderPhase.PAUSED


class TestStop:

    def test_stop_completes_session(self, recorder, active):
        session = recorder.stop(active)

        assert session.status == "completed"
        assert stored_status(active) == "completed"
        assert recorder.state.phase == RecorderPhase.IDLE
        assert recorder.state.session_id is None

    def test_stop_from_paused(self, recorder, active):
        recorder.pause()
        assert recorder.stop().status == "completed"

    def test_stop_when_idle_mutates_nothing(self, recorder, active):
        recorder.stop()
        with SessionLocal() as db:
            before = [(s.session_id, s.status, s.title) for s in storage.list_sessions(db)]

        assert recorder.stop() is None

        with SessionLocal() as db:
            after = [(s.session_id, s.status, s.title) for s in storage.list_sessions(db)]
        assert after == before

    def test_stop_while_awaiting_title_cancels(self, recorder):
        session_id = recorder.start_session()

        assert recorder.stop() is None
        assert recorder.state.phase == RecorderPhase.IDLE
        assert stored_status(session_id) is None

    def test_stop_store_failure_still_resets(self, recorder, active, monkeypatch):
        monkeypatch.setattr(storage, "save_session", fail_store)

        with pytest.raises(StoreError):
            recorder.stop()

        assert recorder.state.phase == RecorderPhase.IDLE


class TestRecordEvent:

    def test_active_records_with_title_snapshot(self, recorder, active):
        result = record(recorder)

        assert result.outcome == RecordOutcome.ACCEPTED
        with SessionLocal() as db:
            rows = storage.get_messages_by_session(db, active)
        assert len(rows) == 1
        assert rows[0].id == result.message_id
        assert rows[0].session_title == "Standup"
        assert rows[0].chat_id == "c1"
        assert rows[0].username == "alice"
        assert rows[0].date == format_ts(NOW)

    def test_paused_drops_event(self, recorder, active):
        recorder.pause()

        result = record(recorder)

        assert result.outcome == RecordOutcome.DROPPED_PAUSED
        assert message_count() == 0

    def test_idle_ignores_event(self, recorder):
        assert record(recorder).outcome == RecordOutcome.IGNORED
        assert message_count() == 0

    def test_awaiting_title_uses_text_as_title(self, recorder):
        session_id = recorder.start_session()

        result = record(recorder, text="Planning")

        assert result.outcome == RecordOutcome.TITLE_ASSIGNED
        assert message_count() == 0
        assert recorder.state.phase == RecorderPhase.ACTIVE
        with SessionLocal() as db:
            assert storage.get_session(db, session_id).title == "Planning"

    def test_awaiting_title_rejects_blank_text(self, recorder):
        recorder.start_session()

        assert record(recorder, text="  ").outcome == RecordOutcome.TITLE_REJECTED
        assert recorder.state.phase == RecorderPhase.AWAITING_TITLE
        assert message_count() == 0

    def test_message_store_failure_surfaces(self, recorder, active, monkeypatch):
        monkeypatch.setattr(storage, "create_message", fail_store)

        with pytest.raises(StoreError):
            record(recorder)
        assert recorder.state.phase == RecorderPhase.ACTIVE

    def test_nothing_recorded_after_stop(self, recorder, active):
        record(recorder)
        recorder.stop()

        assert record(recorder).outcome == RecordOutcome.IGNORED
        assert message_count() == 1


class TestManualStatus:

    def test_completing_current_session_idles_recorder(self, recorder, active):
        recorder.set_status(active, "completed")
        assert recorder.state.phase == RecorderPhase.IDLE

    def test_pausing_current_session_pauses_recorder(self, recorder, active):
        recorder.set_status(active, "paused")
        assert recorder.state.phase == RecorderPhase.PAUSED
        assert record(recorder).outcome == RecordOutcome.DROPPED_PAUSED


class TestSessionChangedElsewhere:

    def complete_by_reconciler(self, clock):
        clock.now = clock.now + timedelta(hours=3)
        assert SessionReconciler(SessionLocal, clock=clock).reconcile_once().updated == 1

    def remove_row(self, session_id):
        with SessionLocal() as db:
            db.query(RecordingSession).filter(RecordingSession.session_id == session_id).delete()
            db.commit()

    def test_pause_after_reconciler_completed_idles_recorder(self, recorder, active, clock):
        self.complete_by_reconciler(clock)

        with pytest.raises(InvalidTransitionError):
            recorder.pause()

        assert recorder.state.phase == RecorderPhase.IDLE
        assert recorder.resume() is None
        assert record(recorder).outcome == RecordOutcome.IGNORED
        assert message_count() == 0
        assert stored_status(active) == "completed"

    def test_resume_after_session_completed_elsewhere_idles_recorder(self, recorder, active):
        recorder.pause()
        with SessionLocal() as db:
            storage.save_session(db, active, status="completed")

        with pytest.raises(InvalidTransitionError):
            recorder.resume()

        assert recorder.state.phase == RecorderPhase.IDLE

    def test_event_after_reconciler_completed_is_not_recorded(self, recorder, active, clock):
        self.complete_by_reconciler(clock)

        result = record(recorder)

        assert result.outcome == RecordOutcome.IGNORED
        assert recorder.state.phase == RecorderPhase.IDLE
        assert message_count() == 0

    def test_stop_after_reconciler_completed(self, recorder, active, clock):
        self.complete_by_reconciler(clock)

        assert recorder.stop().status == "completed"
        assert recorder.state.phase == RecorderPhase.IDLE

    def test_stop_after_row_removed_creates_nothing(self, recorder, active):
        self.remove_row(active)

        assert recorder.stop() is None
        assert recorder.state.phase == RecorderPhase.IDLE
        assert stored_status(active) is None

    def test_pause_after_row_removed_creates_nothing(self, recorder, active):
        self.remove_row(active)

        assert recorder.pause() is None
        assert recorder.state.phase == RecorderPhase.IDLE
        assert stored_status(active) is None

    def test_event_after_row_removed_is_not_recorded(self, recorder, active):
        self.remove_row(active)

        assert record(recorder).outcome == RecordOutcome.IGNORED
        assert message_count() == 0


def test_concurrent_stop_and_record_never_write_after_stop(recorder, active):
    """Events racing a stop are either recorded before it or ignored after it."""
    outcomes = []
    barrier = threading.Barrier(9)

    def send():
        barrier.wait()
        for _ in range(5):
            outcomes.append(record(recorder).outcome)

    def stop():
        barrier.wait()
        recorder.stop()

    threads = [threading.Thread(target=send) for _ in range(8)] + [threading.Thread(target=stop)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    accepted = outcomes.count(RecordOutcome.ACCEPTED)
    assert accepted + outcomes.count(RecordOutcome.IGNORED) == 40
    assert message_count() == accepted
    with SessionLocal() as db:
        latest = storage.get_latest_message_for_session(db, active)
    assert stored_status(active) == "completed"
    if latest is not None:
        assert latest.session_title == "Standup"


def test_event_keeps_original_date(recorder, active):
    recorder.record_event("c1", "bob", "late reply", NOW - timedelta(hours=3))
    with SessionLocal() as db:
        assert storage.get_messages_by_session(db, active)[0].date == format_ts(NOW - timedelta(hours=3))


def test_reset_forces_idle_without_store_write(recorder, active):
    recorder.reset()

    assert recorder.snapshot().phase == RecorderPhase.IDLE
    assert stored_status(active) == "active"
