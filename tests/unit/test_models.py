"""Tests for SQLModel table definitions and SyncSession computed metrics."""
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from datasync.models.enforcement import Case, Notice
from datasync.models.sync import COMPLETED, RUNNING, SyncBatch, SyncSession, as_utc


def _session(**overrides) -> SyncSession:
    values = dict(
        session_id="sync_test",
        sync_type="import_cases",
        target_resource="cases",
        source_adapter="airtable",
        status=RUNNING,
    )
    values.update(overrides)
    return SyncSession(**values)


class TestSyncSessionMetrics:
    def test_completion_percentage(self):
        row = _session(estimated_total=200, progress_stats={"processed": 50})
        assert row.completion_percentage == 25.0

    def test_completion_without_estimate(self):
        assert _session(progress_stats={"processed": 50}).completion_percentage == 0.0

    def test_error_rate(self):
        row = _session(estimated_total=50, error_count=5)
        assert row.error_rate_percentage == 10.0

    def test_speed_and_duration(self):
        start = datetime(2024, 1, 1, 12, 0, 0)
        row = _session(
            started_at=start,
            completed_at=start + timedelta(minutes=2),
            progress_stats={"processed": 300},
        )
        assert row.duration_seconds == 120.0
        assert row.processing_speed_records_per_minute == 150.0

    def test_no_start_means_no_speed(self):
        row = _session(progress_stats={"processed": 10})
        assert row.duration_seconds is None
        assert row.processing_speed_records_per_minute == 0.0

    def test_is_active(self):
        assert _session(status=RUNNING).is_active
        assert not _session(status=COMPLETED).is_active


class TestTimestamps:
    def test_defaults_are_timezone_aware(self):
        row = _session()
        assert row.created_at.tzinfo is not None
        assert row.updated_at.utcoffset() == timedelta(0)
        assert Case(regulator_id="HSE-1").created_at.tzinfo is not None

    def test_running_duration_from_naive_start(self):
        started = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=30)
        row = _session(started_at=started)
        assert 29.0 <= row.duration_seconds < 60.0

    def test_mixed_naive_and_aware(self):
        start = datetime(2024, 1, 1, 12, 0, 0)
        row = _session(started_at=start, completed_at=datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc))
        assert row.duration_seconds == 60.0

    def test_as_utc(self):
        assert as_utc(None) is None
        assert as_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc
        aware = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert as_utc(aware) is aware


class TestSyncBatchMetrics:
    def test_rates(self):
        batch = SyncBatch(
            session_id="sync_test",
            batch_number=1,
            batch_size=10,
            records_processed=10,
            records_created=6,
            records_existing=2,
            records_failed=2,
        )
        assert batch.success_rate_percentage == 80.0
        assert batch.error_rate_percentage == 20.0
        assert batch.has_errors
        assert batch.is_active

    def test_empty_batch(self):
        batch = SyncBatch(session_id="sync_test", batch_number=1, batch_size=1)
        assert batch.success_rate_percentage == 0.0
        assert not batch.has_errors
        assert batch.duration_seconds is None


class TestPersistence:
    def test_json_columns_round_trip(self, test_session):
        test_session.add(_session(progress_stats={"processed": 3, "errors": 1}, config={"batch_size": 10}))
        test_session.commit()
        row = test_session.exec(select(SyncSession)).one()
        assert row.progress_stats == {"processed": 3, "errors": 1}
        assert row.config == {"batch_size": 10}
        assert row.final_stats is None

    def test_aware_timestamps_persist(self, test_session):
        start = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        test_session.add(_session(started_at=start, completed_at=start + timedelta(seconds=90)))
        test_session.commit()
        row = test_session.exec(select(SyncSession)).one()
        assert row.duration_seconds == 90.0
        assert row.created_at is not None

    def test_case_regulator_id_unique(self, test_session):
        test_session.add(Case(regulator_id="HSE-1", offender_name="A"))
        test_session.commit()
        test_session.add(Case(regulator_id="HSE-1", offender_name="B"))
        with pytest.raises(IntegrityError):
            test_session.commit()

    def test_notice_dates(self, test_session):
        test_session.add(
            Notice(regulator_id="N-1", offender_name="A", notice_date=date(2024, 3, 1))
        )
        test_session.commit()
        row = test_session.exec(select(Notice)).one()
        assert row.notice_date == date(2024, 3, 1)
        assert row.created_at is not None
