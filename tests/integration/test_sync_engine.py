"""
Integration tests for SyncEngine.

Memory source adapter -> SQLModel targets on in-memory SQLite, with a real
SessionTracker and RetryEngine (sleep and clock injected). No network.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import select

from datasync.adapters.memory import MemorySourceAdapter
from datasync.errors import (
    CircuitOpenError,
    NetworkError,
    SessionNotFoundError,
    SyncInitializationError,
)
from datasync.models.enforcement import Case
from datasync.models.sync import CANCELLED, COMPLETED, FAILED, SyncBatch, SyncSession
from datasync.sync.engine import DRY_RUN, SUCCESS, SyncEngine
from datasync.sync.events import DEFAULT_TOPIC

from conftest import case_record

CASE_TARGET = {
    "unique_field": "regulator_id",
    "field_mapping": {
        "regulator_id": "regulator_id",
        "offender_name": "offender_name",
        "agency_code": "agency_code",
        "offence_action_date": "offence_action_date",
        "offence_fine": "offence_fine",
    },
    "transformations": [("normalize_dates", ["offence_action_date"])],
}


def _config(records, **processing) -> dict:
    return {
        "source_adapter": "memory",
        "source_config": {"records": records, "page_size": 2},
        "target_resource": "cases",
        "target_config": dict(CASE_TARGET),
        "processing_config": {"batch_size": 2, **processing},
    }


@pytest.fixture
def sync_engine(registry, tracker, retry_engine, broadcaster) -> SyncEngine:
    return SyncEngine(registry, tracker, retry_engine=retry_engine, broadcaster=broadcaster)


def _cases(test_session):
    return test_session.exec(select(Case).order_by(Case.regulator_id)).all()


def _session_row(test_session, session_id):
    return test_session.exec(select(SyncSession).where(SyncSession.session_id == session_id)).one()


# ─── Happy path ───────────────────────────────────────────────────────────────

class TestExecuteSync:
    async def test_imports_records_and_completes_session(self, sync_engine, test_session):
        result = await sync_engine.execute_sync(_config([case_record(i) for i in range(1, 6)]))

        assert result.status == SUCCESS
        assert result.stats == {"total_processed": 5, "created": 5, "updated": 0, "existing": 0, "errors": 0}
        assert [c.regulator_id for c in _cases(test_session)] == [f"HSE-{i:04d}" for i in range(1, 6)]

        row = _session_row(test_session, result.session_id)
        assert row.status == COMPLETED
        assert row.final_stats == result.stats
        assert row.progress_stats["processed"] == 5
        assert row.estimated_total == 5
        assert row.completed_at is not None

    async def test_second_run_is_idempotent(self, sync_engine, test_session):
        records = [case_record(i) for i in range(1, 4)]
        await sync_engine.execute_sync(_config(records))
        result = await sync_engine.execute_sync(_config(records))
        assert result.stats["existing"] == 3
        assert result.stats["created"] == 0
        assert result.stats["updated"] == 0
        assert len(_cases(test_session)) == 3

    async def test_changed_source_updates(self, sync_engine, test_session):
        await sync_engine.execute_sync(_config([case_record(1)]))
        result = await sync_engine.execute_sync(_config([case_record(1, offence_fine=42)]))
        assert result.stats["updated"] == 1
        assert _cases(test_session)[0].offence_fine == 42

    async def test_empty_source(self, sync_engine):
        result = await sync_engine.execute_sync(_config([]))
        assert result.status == SUCCESS
        assert result.stats["total_processed"] == 0

    async def test_limit_stops_early(self, sync_engine, test_session):
        result = await sync_engine.execute_sync(_config([case_record(i) for i in range(1, 10)], limit=3))
        assert result.stats["total_processed"] == 3
        assert len(_cases(test_session)) == 3
        assert _session_row(test_session, result.session_id).estimated_total == 3

    async def test_adapter_instance_in_config(self, sync_engine):
        config = _config([case_record(1)])
        config["source_adapter"] = MemorySourceAdapter()
        result = await sync_engine.execute_sync(config)
        assert result.stats["created"] == 1

    async def test_explicit_session_id(self, sync_engine):
        result = await sync_engine.execute_sync(_config([case_record(1)]), session_id="sync_nightly_1")
        assert result.session_id == "sync_nightly_1"

    async def test_skip_strategy_second_run_creates_nothing(self, sync_engine, test_session):
        records = [case_record(i) for i in range(1, 5)]
        config = _config(records)
        config["target_config"]["duplicate_strategy"] = "skip"
        first = await sync_engine.execute_sync(config)
        changed = _config([case_record(i, offence_fine=1) for i in range(1, 5)])
        changed["target_config"]["duplicate_strategy"] = "skip"
        second = await sync_engine.execute_sync(changed)

        assert first.stats["created"] == 4
        assert second.stats == {"total_processed": 4, "created": 0, "updated": 0, "existing": 4, "errors": 0}
        assert [c.offence_fine for c in _cases(test_session)] == [1000, 2000, 3000, 4000]

    async def test_only_mapped_fields_are_written(self, sync_engine, test_session):
        config = _config([case_record(1, offence_result="Guilty", offence_costs=250)])
        config["target_config"]["field_mapping"] = {
            "regulator_id": "regulator_id",
            "offender_name": "offender_name",
            "offence_fine": "offence_fine",
        }
        await sync_engine.execute_sync(config)

        case = _cases(test_session)[0]
        assert case.regulator_id == "HSE-0001"
        assert case.offender_name == "Offender 1 Ltd"
        assert case.offence_fine == 1000
        assert case.agency_code is None
        assert case.offence_result is None
        assert case.offence_costs is None
        assert case.offence_action_date is None

    async def test_validation_rules_reject_records(self, sync_engine, test_session):
        config = _config([case_record(1), case_record(2, agency_code="ea"), case_record(3)])
        config["target_config"]["validation_rules"] = [("allowed_values", {"agency_code": ["hse"]})]
        result = await sync_engine.execute_sync(config)
        assert result.stats["created"] == 2
        assert result.stats["errors"] == 1
        assert result.error_details[0]["category"] == "sync_validation_error"
        assert [c.regulator_id for c in _cases(test_session)] == ["HSE-0001", "HSE-0003"]


class TestBatchTracking:
    async def test_one_row_per_batch(self, sync_engine, tracker):
        result = await sync_engine.execute_sync(_config([case_record(i) for i in range(1, 6)]))
        batches = tracker.list_batches(result.session_id)
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert [b.records_processed for b in batches] == [2, 2, 1]
        assert {b.status for b in batches} == {"completed"}
        assert batches[0].source_ids == ["rec0001", "rec0002"]
        assert sum(b.records_created for b in batches) == 5

    async def test_retries_counted_on_batch(self, sync_engine, tracker):
        original = sync_engine.processor.process_record
        calls = {"n": 0}

        async def flaky(state, raw, config=None, actor=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise NetworkError("connection_reset")
            return await original(state, raw, config, actor)

        sync_engine.processor.process_record = flaky
        result = await sync_engine.execute_sync(_config([case_record(1), case_record(2)]))
        batch = tracker.list_batches(result.session_id)[0]
        assert batch.retry_count == 1
        assert batch.records_created == 2

    async def test_stream_and_process_keeps_no_batch_rows(self, sync_engine, test_session):
        [b async for b in sync_engine.stream_and_process(_config([case_record(1)]))]
        assert test_session.exec(select(SyncBatch)).all() == []


# ─── Failures ─────────────────────────────────────────────────────────────────

class TestRecordFailures:
    async def test_invalid_record_is_isolated(self, sync_engine, test_session):
        records = [case_record(1), {"id": "bad", "fields": {"regulator_id": "HSE-BAD"}}, case_record(3), case_record(4)]
        result = await sync_engine.execute_sync(_config(records))

        assert result.status == SUCCESS
        assert result.stats["created"] == 3
        assert result.stats["errors"] == 1
        assert len(_cases(test_session)) == 3
        assert result.error_details[0]["category"] == "sync_validation_error"
        assert _session_row(test_session, result.session_id).error_count == 1

    async def test_errors_feed_history_analysis(self, sync_engine):
        records = [{"id": f"bad{i}", "fields": {"regulator_id": f"X{i}"}} for i in range(3)]
        await sync_engine.execute_sync(_config(records))
        analysis = sync_engine.analyze_errors()
        assert analysis["total_errors"] == 3
        assert analysis["by_category"] == {"sync_validation_error": 3}

    async def test_transient_write_failure_retried(self, sync_engine, sleeper):
        original = sync_engine.processor.process_record
        calls = {"n": 0}

        async def flaky(state, raw, config=None, actor=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise NetworkError("connection_reset")
            return await original(state, raw, config, actor)

        sync_engine.processor.process_record = flaky
        result = await sync_engine.execute_sync(_config([case_record(1)]))
        assert result.stats["created"] == 1
        assert len(sleeper.calls) == 1

    async def test_network_failure_after_retries_fails_session(self, sync_engine, test_session, broadcaster):
        sync_engine.processor.process_record = AsyncMock(side_effect=NetworkError("connection_refused"))
        queue = broadcaster.subscribe(DEFAULT_TOPIC)

        with pytest.raises(Exception) as exc_info:
            await sync_engine.execute_sync(_config([case_record(1)], max_recovery_attempts=2))

        row = test_session.exec(select(SyncSession)).one()
        assert row.status == FAILED
        assert row.error_info["category"] == "sync_network_error"
        assert "retry exhausted" in str(exc_info.value)
        events = [queue.get_nowait()["event_type"] for _ in range(queue.qsize())]
        assert events[0] == "sync_started"
        assert events[-1] == "sync_failed"

    async def test_open_circuit_fails_session(self, sync_engine, retry_engine, test_session):
        retry_engine.circuit_breakers.trip("sync:cases")
        with pytest.raises(CircuitOpenError):
            await sync_engine.execute_sync(_config([case_record(1)], enable_circuit_breaker=True))
        assert test_session.exec(select(SyncSession)).one().status == FAILED
        assert _cases(test_session) == []

    async def test_without_recovery_no_retry(self, sync_engine, sleeper):
        sync_engine.processor.process_record = AsyncMock(side_effect=NetworkError("timeout"))
        result = await sync_engine.execute_sync(_config([case_record(1)], enable_error_recovery=False))
        assert result.stats["errors"] == 1
        assert sleeper.calls == []

    async def test_source_stream_error_fails_session(self, sync_engine, test_session):
        adapter = MagicMock(spec=MemorySourceAdapter)
        adapter.name = "broken"
        adapter.initialize = AsyncMock(return_value=None)
        adapter.validate_connection = AsyncMock(return_value=None)
        adapter.get_total_count = AsyncMock(return_value=None)

        async def stream(state):
            yield case_record(1)
            raise NetworkError("connection_reset")

        adapter.stream_records = stream
        config = _config([])
        config["source_adapter"] = adapter

        with pytest.raises(NetworkError):
            await sync_engine.execute_sync(config)
        row = test_session.exec(select(SyncSession)).one()
        assert row.status == FAILED
        assert row.error_info["stats"]["total_processed"] == 0

    async def test_fatal_failure_keeps_partial_batch_counts(self, sync_engine, tracker, test_session):
        original = sync_engine.processor.process_record

        async def third_record_unreachable(state, raw, config=None, actor=None):
            if raw["id"] == "rec0003":
                raise NetworkError("connection_refused")
            return await original(state, raw, config, actor)

        sync_engine.processor.process_record = third_record_unreachable
        records = [case_record(i) for i in range(1, 4)]

        with pytest.raises(Exception):
            await sync_engine.execute_sync(_config(records, batch_size=3, max_recovery_attempts=2))

        row = test_session.exec(select(SyncSession)).one()
        assert row.status == FAILED
        assert row.progress_stats == {"processed": 3, "created": 2, "updated": 0, "existing": 0, "errors": 1}
        assert row.error_count == 1
        assert row.error_info["stats"] == {
            "total_processed": 3, "created": 2, "updated": 0, "existing": 0, "errors": 1,
        }
        assert len(_cases(test_session)) == 2

        batch = tracker.list_batches(row.session_id)[0]
        assert batch.status == "failed"
        assert batch.records_created == 2
        assert batch.records_failed == 1
        assert batch.retry_count == 1
        assert batch.error_details["source_id"] == "rec0003"


class TestInitialization:
    async def test_unknown_target_rejected_before_session(self, sync_engine, test_session):
        config = _config([case_record(1)])
        config["target_resource"] = "NonExistent.Module"
        with pytest.raises(SyncInitializationError) as exc_info:
            await sync_engine.execute_sync(config)
        assert "module not found" in str(exc_info.value)
        assert test_session.exec(select(SyncSession)).all() == []

    async def test_unknown_adapter(self, sync_engine):
        config = _config([])
        config["source_adapter"] = "ftp"
        with pytest.raises(SyncInitializationError):
            await sync_engine.execute_sync(config)

    async def test_bad_source_config(self, sync_engine):
        config = _config([])
        config["source_config"] = {}
        with pytest.raises(SyncInitializationError) as exc_info:
            await sync_engine.execute_sync(config)
        assert exc_info.value.detail["stage"] == "adapter"

    async def test_invalid_batch_size(self, sync_engine):
        with pytest.raises(SyncInitializationError):
            await sync_engine.execute_sync(_config([], batch_size=0))


# ─── Dry run, streaming, cancellation, status ─────────────────────────────────

class TestDryRun:
    async def test_no_side_effects(self, sync_engine, test_session):
        result = await sync_engine.execute_sync(_config([case_record(1)]), dry_run=True)
        assert result.status == DRY_RUN
        assert result.session_id is None
        assert result.config.target_resource == "cases"
        assert _cases(test_session) == []
        assert test_session.exec(select(SyncSession)).all() == []


class TestStreamAndProcess:
    async def test_yields_batches_without_session(self, sync_engine, test_session):
        batches = [b async for b in sync_engine.stream_and_process(_config([case_record(i) for i in range(1, 6)]))]
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert [b.processed for b in batches] == [2, 2, 1]
        assert sum(b.created for b in batches) == 5
        assert test_session.exec(select(SyncSession)).all() == []


class TestCancellation:
    async def test_cancel_between_batches(self, sync_engine, broadcaster, test_session):
        queue = broadcaster.subscribe(DEFAULT_TOPIC)
        records = [case_record(i) for i in range(1, 11)]

        async def cancel_after_first_batch():
            while True:
                event = await queue.get()
                if event["event_type"] == "batch_processed":
                    await sync_engine.cancel_sync(event["payload"]["session_id"])
                    return

        watcher = asyncio.create_task(cancel_after_first_batch())
        result = await sync_engine.execute_sync(_config(records))
        await watcher

        assert result.status == CANCELLED
        assert result.stats["total_processed"] < 10
        assert _session_row(test_session, result.session_id).status == CANCELLED

    async def test_cancel_pending_session_directly(self, sync_engine, tracker):
        row = tracker.start_session(sync_type="sync", target_resource="cases", source_adapter="memory")
        await sync_engine.cancel_sync(row.session_id)
        assert tracker.get_session(row.session_id).status == CANCELLED

    async def test_cancel_unknown_session(self, sync_engine):
        with pytest.raises(SessionNotFoundError):
            await sync_engine.cancel_sync("sync_nope")

    async def test_cancel_finished_session_is_a_no_op(self, sync_engine, tracker):
        result = await sync_engine.execute_sync(_config([case_record(1)]))
        await sync_engine.cancel_sync(result.session_id)
        row = tracker.get_session(result.session_id)
        assert row.status == COMPLETED
        assert row.final_stats == result.stats

    async def test_cancel_cancelled_session_again(self, sync_engine, tracker):
        row = tracker.start_session(sync_type="sync", target_resource="cases", source_adapter="memory")
        await sync_engine.cancel_sync(row.session_id)
        await sync_engine.cancel_sync(row.session_id)
        assert tracker.get_session(row.session_id).status == CANCELLED


class TestStatusAndEvents:
    async def test_get_sync_status(self, sync_engine):
        result = await sync_engine.execute_sync(_config([case_record(1), case_record(2)]))
        status = sync_engine.get_sync_status(result.session_id)
        assert status["status"] == COMPLETED
        assert status["progress_stats"]["created"] == 2
        assert status["completion_percentage"] == 100.0
        assert status["cancel_requested"] is False

    async def test_progress_events(self, sync_engine, broadcaster):
        result = await sync_engine.execute_sync(_config([case_record(i) for i in range(1, 4)]))
        events = broadcaster.events_for(result.session_id)
        kinds = [e["event_type"] for e in events]
        assert kinds == ["sync_started", "batch_processed", "batch_processed", "sync_completed"]
        last_batch = events[2]["payload"]
        assert last_batch["batch_number"] == 2
        assert last_batch["items_found"] == 3
        assert last_batch["items_created"] == 3

    async def test_pubsub_disabled(self, sync_engine, broadcaster):
        config = _config([case_record(1)])
        config["pubsub_config"] = {"enabled": False}
        result = await sync_engine.execute_sync(config)
        assert broadcaster.events_for(result.session_id) == []
