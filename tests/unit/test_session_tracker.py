"""Tests for SessionTracker lifecycle and progress bookkeeping."""
import logging
import re

import pytest

from datasync.errors import InvalidSessionTransitionError, SessionNotFoundError
from datasync.models.sync import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PAUSED,
    PENDING,
    RUNNING,
    SESSION_ID_PATTERN,
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_PROCESSING,
)
from datasync.sync.session_tracker import generate_session_id


def _start(tracker, **overrides):
    kwargs = dict(
        sync_type="import_cases",
        target_resource="cases",
        source_adapter="airtable",
        config={"batch_size": 10},
        estimated_total=100,
    )
    kwargs.update(overrides)
    return tracker.start_session(**kwargs)


class TestStartSession:
    def test_generated_id_matches_pattern(self):
        assert re.match(SESSION_ID_PATTERN, generate_session_id())

    def test_creates_pending_row(self, tracker):
        row = _start(tracker)
        assert row.status == PENDING
        assert row.started_at is not None
        assert row.progress_stats == {"processed": 0, "created": 0, "updated": 0, "existing": 0, "errors": 0}
        assert row.config == {"batch_size": 10}

    def test_explicit_session_id(self, tracker):
        row = _start(tracker, session_id="sync_manual-1")
        assert tracker.get_session("sync_manual-1").id == row.id

    @pytest.mark.parametrize("session_id", ["manual", "sync_", "sync_bad id"])
    def test_rejects_bad_session_id(self, tracker, session_id):
        with pytest.raises(ValueError):
            _start(tracker, session_id=session_id)

    def test_rejects_bad_target_resource(self, tracker):
        with pytest.raises(ValueError):
            _start(tracker, target_resource="not a module")

    def test_rejects_negative_estimate(self, tracker):
        with pytest.raises(ValueError):
            _start(tracker, estimated_total=-1)


class TestTransitions:
    def test_happy_path(self, tracker):
        sid = _start(tracker).session_id
        assert tracker.mark_running(sid).status == RUNNING
        row = tracker.complete_session(sid, {"total_processed": 3}, processing_time_ms=1500)
        assert row.status == COMPLETED
        assert row.final_stats == {"total_processed": 3}
        assert row.processing_time_ms == 1500
        assert row.completed_at is not None

    def test_elapsed_time_measured_when_not_given(self, tracker):
        sid = _start(tracker).session_id
        tracker.mark_running(sid)
        row = tracker.cancel_session(sid)
        assert row.processing_time_ms >= 0
        assert row.duration_seconds >= 0.0

    def test_pause_and_resume(self, tracker):
        sid = _start(tracker).session_id
        tracker.mark_running(sid)
        assert tracker.pause_session(sid).status == PAUSED
        assert tracker.resume_session(sid).status == RUNNING

    def test_fail_records_error_info(self, tracker):
        sid = _start(tracker).session_id
        tracker.mark_running(sid)
        row = tracker.fail_session(sid, {"error_type": "NetworkError", "message": "down"})
        assert row.status == FAILED
        assert row.error_info["error_type"] == "NetworkError"
        assert row.processing_time_ms >= 0

    def test_cancel_from_pending(self, tracker):
        sid = _start(tracker).session_id
        assert tracker.cancel_session(sid).status == CANCELLED

    def test_cannot_complete_pending(self, tracker):
        sid = _start(tracker).session_id
        with pytest.raises(InvalidSessionTransitionError) as exc_info:
            tracker.complete_session(sid, {})
        assert exc_info.value.current == PENDING
        assert tracker.get_session(sid).status == PENDING

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_states_are_final(self, tracker, finish):
        sid = _start(tracker).session_id
        tracker.mark_running(sid)
        if finish == "complete":
            tracker.complete_session(sid, {})
        elif finish == "fail":
            tracker.fail_session(sid, {"message": "x"})
        else:
            tracker.cancel_session(sid)
        with pytest.raises(InvalidSessionTransitionError):
            tracker.mark_running(sid)
        with pytest.raises(InvalidSessionTransitionError):
            tracker.cancel_session(sid)

    def test_unknown_session(self, tracker):
        with pytest.raises(SessionNotFoundError):
            tracker.mark_running("sync_missing")


class TestProgress:
    def test_merges_counters(self, tracker):
        sid = _start(tracker).session_id
        tracker.mark_running(sid)
        tracker.update_progress(sid, {"processed": 10, "created": 8})
        row = tracker.update_progress(sid, {"processed": 20, "existing": 2}, error_count=1)
        assert row.progress_stats == {"processed": 20, "created": 8, "updated": 0, "existing": 2, "errors": 0}
        assert row.error_count == 1
        assert row.status == RUNNING

    def test_completion_percentage(self, tracker):
        sid = _start(tracker, estimated_total=40).session_id
        row = tracker.update_progress(sid, {"processed": 10})
        assert row.completion_percentage == 25.0

    def test_negative_values_rejected(self, tracker):
        sid = _start(tracker).session_id
        with pytest.raises(ValueError):
            tracker.update_progress(sid, {"processed": -1})
        with pytest.raises(ValueError):
            tracker.update_progress(sid, {"processed": 1}, error_count=-2)

    def test_exceeding_estimate_warns(self, tracker, caplog):
        sid = _start(tracker, estimated_total=5).session_id
        with caplog.at_level(logging.WARNING, logger="datasync.sync.session_tracker"):
            tracker.update_progress(sid, {"processed": 6})
        assert "more than the estimated" in caplog.text

    def test_snapshot(self, tracker):
        sid = _start(tracker).session_id
        snapshot = tracker.snapshot(tracker.get_session(sid))
        assert snapshot["session_id"] == sid
        assert snapshot["status"] == PENDING
        assert snapshot["is_active"] is True
        assert snapshot["completion_percentage"] == 0.0


class TestListSessions:
    def test_filters_by_status_newest_first(self, tracker):
        first = _start(tracker).session_id
        second = _start(tracker).session_id
        tracker.cancel_session(first)

        assert [r.session_id for r in tracker.list_sessions()] == [second, first]
        assert [r.session_id for r in tracker.list_sessions(status=CANCELLED)] == [first]
        assert len(tracker.list_sessions(limit=1)) == 1


class TestBatches:
    def test_start_batch(self, tracker):
        sid = _start(tracker).session_id
        batch = tracker.start_batch(sid, 1, batch_size=3, source_ids=["rec1", "rec2", None])
        assert batch.id is not None
        assert batch.status == BATCH_PROCESSING
        assert batch.source_ids == ["rec1", "rec2"]

    def test_start_batch_unknown_session(self, tracker):
        with pytest.raises(SessionNotFoundError):
            tracker.start_batch("sync_missing", 1, batch_size=1)

    def test_start_batch_rejects_bad_numbers(self, tracker):
        sid = _start(tracker).session_id
        with pytest.raises(ValueError):
            tracker.start_batch(sid, 0, batch_size=1)

    def test_progress_then_complete(self, tracker):
        sid = _start(tracker).session_id
        batch = tracker.start_batch(sid, 1, batch_size=4)
        tracker.update_batch_progress(batch.id, {"total": 2, "created": 2})
        done = tracker.complete_batch(
            batch.id,
            {"total": 4, "created": 3, "existing": 1, "errors": 0},
            retry_count=2,
            processing_time_ms=150,
        )
        assert done.status == BATCH_COMPLETED
        assert done.records_processed == 4
        assert done.records_created == 3
        assert done.records_existing == 1
        assert done.retry_count == 2
        assert done.processing_time_ms == 150
        assert done.completed_at is not None
        assert done.success_rate_percentage == 100.0

    def test_fail_batch_keeps_error_details(self, tracker):
        sid = _start(tracker).session_id
        batch = tracker.start_batch(sid, 1, batch_size=3)
        failed = tracker.fail_batch(batch.id, {"error_type": "NetworkError"}, {"total": 3, "created": 2, "errors": 1})
        assert failed.status == BATCH_FAILED
        assert failed.error_details == {"error_type": "NetworkError"}
        assert failed.records_failed == 1
        assert failed.has_errors

    def test_finished_batch_is_final(self, tracker):
        sid = _start(tracker).session_id
        batch = tracker.start_batch(sid, 1, batch_size=1)
        tracker.cancel_batch(batch.id)
        with pytest.raises(InvalidSessionTransitionError):
            tracker.complete_batch(batch.id, {"total": 1})
        with pytest.raises(InvalidSessionTransitionError):
            tracker.update_batch_progress(batch.id, {"total": 1})
        assert tracker.list_batches(sid)[0].status == BATCH_CANCELLED

    def test_negative_counts_rejected(self, tracker):
        sid = _start(tracker).session_id
        batch = tracker.start_batch(sid, 1, batch_size=1)
        with pytest.raises(ValueError):
            tracker.update_batch_progress(batch.id, {"errors": -1})

    def test_unknown_batch(self, tracker):
        with pytest.raises(SessionNotFoundError):
            tracker.complete_batch(999, {})

    def test_list_batches_in_order(self, tracker):
        sid = _start(tracker).session_id
        other = _start(tracker).session_id
        for n in (1, 2, 3):
            tracker.start_batch(sid, n, batch_size=1)
        tracker.start_batch(other, 1, batch_size=1)
        assert [b.batch_number for b in tracker.list_batches(sid)] == [1, 2, 3]
