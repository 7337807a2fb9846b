"""
SyncEngine — orchestrates one source -> target synchronization run.

Flow for execute_sync:
  1. Validate config, resolve adapter and target, initialize the adapter and
     check its connection (no session exists yet; failures raise
     SyncInitializationError)
  2. dry_run: stop here and return the validated config
  3. Create the session (pending -> running)
  4. Stream records in batches of batch_size (stopping at limit); each
     record goes through the target processor, wrapped by the retry engine
  5. After each batch merge counters into the session and publish progress
  6. Stream exhausted: complete the session with final_stats

Record-level failures are isolated and counted; failures the recovery
logic marks fatal (open circuit, network gone after every retry) and any
source stream error fail the session and are re-raised. Records a failed
batch wrote before the fatal error still count in the session stats.

When a session exists every batch is also recorded as a SyncBatch row.

Batches run sequentially in stream order. cancel_sync sets a cooperative
flag checked before each batch and at every retry attempt boundary.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Mapping, Optional, Union

from datasync.adapters.base import SourceAdapter
from datasync.config import get_settings
from datasync.errors import (
    ConfigurationError,
    SourceAdapterError,
    SyncCancelledError,
    SyncInitializationError,
    as_sync_error,
)
from datasync.models.sync import TERMINAL_STATUSES
from datasync.retry.engine import RetryContext, RetryEngine
from datasync.retry.policies import resolve_policy
from datasync.sync.config import SyncConfig, validate_sync_config
from datasync.sync.error_classifier import ErrorClassification, ErrorClassifier
from datasync.sync.error_recovery import ErrorRecovery
from datasync.sync.events import DEFAULT_TOPIC, EventBroadcaster
from datasync.sync.registry import SyncRegistry
from datasync.sync.session_tracker import SessionTracker
from datasync.sync.target_processor import (
    ERROR,
    ProcessorState,
    ProcessResult,
    TargetProcessor,
)

logger = logging.getLogger(__name__)

SUCCESS = "success"
DRY_RUN = "dry_run"
CANCELLED = "cancelled"

ERROR_HISTORY_LIMIT = 1000


def empty_stats() -> Dict[str, int]:
    return {"total_processed": 0, "created": 0, "updated": 0, "existing": 0, "errors": 0}


@dataclass
class SyncResult:
    status: str
    stats: Dict[str, int]
    session_id: Optional[str] = None
    processing_time_ms: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    config: Optional[SyncConfig] = None
    integrity_alerts: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BatchResult:
    batch_number: int
    processed: int
    created: int = 0
    updated: int = 0
    existing: int = 0
    errors: int = 0
    cancelled: bool = False
    results: List[ProcessResult] = field(default_factory=list)


@dataclass
class PreparedRun:
    config: SyncConfig
    adapter: SourceAdapter
    adapter_state: Any
    processor_state: ProcessorState
    session_id: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None
    consecutive_failures: int = 0
    last_batch: Optional[int] = None
    failed_batch: Optional[BatchResult] = None
    write_attempts: int = 0
    errors: List[ErrorClassification] = field(default_factory=list)


class SyncEngine:
    def __init__(
        self,
        registry: SyncRegistry,
        tracker: SessionTracker,
        retry_engine: Optional[RetryEngine] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        verifier=None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        """
        Args:
            registry: Resolves source adapter and target resource names.
            tracker: Persists session rows.
            retry_engine: Wraps record writes; one is created if omitted.
            broadcaster: Progress notification sink (optional).
            verifier: IntegrityVerifier used when integrity monitoring is
                enabled for a run (optional).
            classifier: Shared error classifier.
        """
        self.registry = registry
        self.tracker = tracker
        self.classifier = classifier or ErrorClassifier()
        self.retry_engine = retry_engine or RetryEngine(classifier=self.classifier)
        self.broadcaster = broadcaster
        self.verifier = verifier
        self.processor = TargetProcessor(registry)
        self.recovery = ErrorRecovery(self.classifier)
        self.error_history: Deque[ErrorClassification] = deque(maxlen=ERROR_HISTORY_LIMIT)
        self._active: Dict[str, asyncio.Event] = {}

    # ─── Public API ───────────────────────────────────────────────────────────

    async def execute_sync(
        self,
        config: Union[SyncConfig, Mapping[str, Any]],
        *,
        dry_run: bool = False,
        actor: Any = None,
        session_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Run a full sync.

        Returns:
            SyncResult with status success, cancelled or dry_run.

        Raises:
            SyncInitializationError: config, adapter or target rejected
                before any session was created.
            SyncError (or the original exception): a fatal failure; the
                session is marked failed first.
        """
        started = time.monotonic()
        run = await self._prepare(config)

        if dry_run:
            logger.info("Dry run OK for %s -> %s", run.config.source_adapter_name, run.config.target_resource)
            return SyncResult(
                status=DRY_RUN,
                stats=empty_stats(),
                config=run.config,
                processing_time_ms=_elapsed_ms(started),
            )

        cfg = run.config
        estimated_total = await self._estimated_total(run)
        session = self.tracker.start_session(
            sync_type=cfg.session_config.sync_type,
            target_resource=cfg.target_resource,
            source_adapter=cfg.source_adapter_name,
            config=cfg.summary(),
            estimated_total=estimated_total,
            session_id=session_id,
        )
        sid = session.session_id
        run.session_id = sid
        run.cancel_event = asyncio.Event()
        self._active[sid] = run.cancel_event
        self.tracker.mark_running(sid)
        await self._publish(run, "sync_started", {"status": "running", "estimated_total": estimated_total})

        monitor = None
        if cfg.processing_config.enable_integrity_monitoring and self.verifier is not None:
            settings = get_settings()
            monitor = self.verifier.monitor_sync_integrity(
                sid,
                check_interval_seconds=settings.integrity_check_interval_seconds,
                alert_threshold_percentage=settings.integrity_alert_threshold_percentage,
            )

        stats = empty_stats()
        cancelled = False
        try:
            async for batch in self._iter_batches(run, actor):
                self._accumulate(stats, batch)
                run.last_batch = batch.batch_number
                self.tracker.update_progress(
                    sid,
                    _progress_stats(stats),
                    error_count=stats["errors"],
                )
                await self._publish(run, "batch_processed", _progress_payload(sid, "running", batch.batch_number, stats))
            cancelled = run.cancel_event.is_set()
        except Exception as exc:
            if run.failed_batch is not None:
                self._accumulate(stats, run.failed_batch)
                run.last_batch = run.failed_batch.batch_number
            error = as_sync_error(exc)
            elapsed = _elapsed_ms(started)
            logger.error("Sync %s failed: %s", sid, error)
            self.tracker.update_progress(sid, _progress_stats(stats), error_count=stats["errors"])
            self.tracker.fail_session(
                sid,
                error_info={
                    "error_type": type(error).__name__,
                    "message": str(error),
                    "category": self.classifier.classify(error).category,
                    "stats": dict(stats),
                },
                processing_time_ms=elapsed,
            )
            await self._publish(
                run,
                "sync_failed",
                {**_progress_payload(sid, "failed", run.last_batch, stats), "error": str(error)},
            )
            raise
        finally:
            self._active.pop(sid, None)
            if monitor is not None:
                await monitor.stop()

        elapsed = _elapsed_ms(started)
        alerts = list(monitor.alerts) if monitor is not None else []

        if cancelled:
            self.tracker.cancel_session(sid, processing_time_ms=elapsed)
            await self._publish(run, "sync_cancelled", _progress_payload(sid, "cancelled", run.last_batch, stats))
            logger.info("Sync %s cancelled after %d records", sid, stats["total_processed"])
            return SyncResult(CANCELLED, stats, sid, elapsed, integrity_alerts=alerts)

        self.tracker.complete_session(sid, final_stats=stats, processing_time_ms=elapsed)
        await self._publish(run, "sync_completed", _progress_payload(sid, "completed", run.last_batch, stats))
        logger.info(
            "Sync %s completed: %d processed, %d created, %d updated, %d existing, %d errors",
            sid,
            stats["total_processed"],
            stats["created"],
            stats["updated"],
            stats["existing"],
            stats["errors"],
        )
        return SyncResult(
            status=SUCCESS,
            stats=stats,
            session_id=sid,
            processing_time_ms=elapsed,
            error_details=[c.as_dict() for c in run.errors],
            integrity_alerts=alerts,
        )

    async def stream_and_process(
        self,
        config: Union[SyncConfig, Mapping[str, Any]],
        *,
        actor: Any = None,
    ) -> AsyncIterator[BatchResult]:
        """Pull-based variant: yields one BatchResult per batch, no session."""
        run = await self._prepare(config)
        async for batch in self._iter_batches(run, actor):
            yield batch

    async def cancel_sync(self, session_id: str) -> None:
        """
        Ask a session to stop. Running sessions stop before their next batch;
        pending or paused sessions not being driven by this engine are
        cancelled directly. Sessions already completed, failed or cancelled
        are left as they are.

        Raises:
            SessionNotFoundError: no such session.
        """
        event = self._active.get(session_id)
        if event is not None:
            event.set()
            logger.info("Cancellation requested for %s", session_id)
            return
        row = self.tracker.get_session(session_id)
        if row.status in TERMINAL_STATUSES:
            logger.info("Session %s already %s, nothing to cancel", session_id, row.status)
            return
        self.tracker.cancel_session(session_id)

    def get_sync_status(self, session_id: str) -> Dict[str, Any]:
        snapshot = self.tracker.snapshot(self.tracker.get_session(session_id))
        event = self._active.get(session_id)
        snapshot["cancel_requested"] = bool(event is not None and event.is_set())
        return snapshot

    def analyze_errors(self) -> Dict[str, Any]:
        return self.classifier.analyze_error_patterns(self.error_history)

    # ─── Preparation ──────────────────────────────────────────────────────────

    async def _prepare(self, config: Union[SyncConfig, Mapping[str, Any]]) -> PreparedRun:
        cfg = validate_sync_config(config)
        try:
            adapter = self.registry.resolve_adapter(cfg.source_adapter)
            processor_state = self.processor.initialize(cfg.target_resource, cfg.target_config)
        except (ConfigurationError, SourceAdapterError) as exc:
            raise SyncInitializationError({"stage": "resolve", "error": str(exc)}) from exc

        try:
            adapter_state = await adapter.initialize(cfg.source_config)
            await adapter.validate_connection(adapter_state)
        except Exception as exc:
            error = as_sync_error(exc)
            raise SyncInitializationError(
                {"stage": "adapter", "error": str(error), "error_type": type(error).__name__}
            ) from exc

        return PreparedRun(
            config=cfg,
            adapter=adapter,
            adapter_state=adapter_state,
            processor_state=processor_state,
        )

    async def _estimated_total(self, run: PreparedRun) -> Optional[int]:
        try:
            total = await run.adapter.get_total_count(run.adapter_state)
        except Exception as exc:
            logger.warning("Total count unavailable, running without estimate: %s", exc)
            total = None
        limit = run.config.processing_config.limit
        if limit is not None:
            total = limit if total is None else min(total, limit)
        return total

    # ─── Batch loop ───────────────────────────────────────────────────────────

    async def _iter_batches(self, run: PreparedRun, actor: Any) -> AsyncIterator[BatchResult]:
        pc = run.config.processing_config
        stream = run.adapter.stream_records(run.adapter_state)
        batch: List[Mapping[str, Any]] = []
        batch_number = 0
        seen = 0
        try:
            async for record in stream:
                batch.append(record)
                seen += 1
                at_limit = pc.limit is not None and seen >= pc.limit
                if len(batch) >= pc.batch_size or at_limit:
                    if self._cancel_requested(run):
                        return
                    batch_number += 1
                    result = await self._process_batch(run, batch, batch_number, actor)
                    batch = []
                    yield result
                    if at_limit or result.cancelled:
                        return
            if batch and not self._cancel_requested(run):
                batch_number += 1
                yield await self._process_batch(run, batch, batch_number, actor)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _cancel_requested(run: PreparedRun) -> bool:
        return run.cancel_event is not None and run.cancel_event.is_set()

    async def _process_batch(
        self,
        run: PreparedRun,
        records: List[Mapping[str, Any]],
        batch_number: int,
        actor: Any,
    ) -> BatchResult:
        started = time.monotonic()
        batch_row = self._start_batch_row(run, records, batch_number)
        attempts_before = run.write_attempts
        results: List[ProcessResult] = []
        cancelled = False
        for raw in records:
            try:
                result = await self._write_record(run, raw, actor)
            except SyncCancelledError:
                cancelled = True
                break
            except Exception as exc:
                error = as_sync_error(exc)
                run.consecutive_failures += 1
                decision = self.recovery.decide(
                    error,
                    {
                        "operation": f"sync:{run.config.target_resource}",
                        "resource_type": run.config.target_resource,
                        "batch_size": run.config.processing_config.batch_size,
                        "consecutive_failures": run.consecutive_failures,
                    },
                )
                self.error_history.append(decision.classification)
                run.errors.append(decision.classification)
                results.append(ProcessResult(ERROR, error=error, source_id=raw.get("id")))
                if decision.fatal:
                    run.failed_batch = _batch_result(batch_number, results)
                    if batch_row is not None:
                        self.tracker.fail_batch(
                            batch_row.id,
                            {
                                "error_type": type(error).__name__,
                                "message": str(error),
                                "category": decision.classification.category,
                                "source_id": raw.get("id"),
                            },
                            TargetProcessor.get_batch_stats(results),
                            retry_count=_retries(run, attempts_before, len(results)),
                            processing_time_ms=_elapsed_ms(started),
                        )
                    raise
                logger.warning(
                    "Record %s failed (%s, %s): %s",
                    raw.get("id"),
                    decision.classification.category,
                    decision.strategy,
                    error,
                )
                continue
            run.consecutive_failures = 0
            results.append(result)

        batch = _batch_result(batch_number, results, cancelled)
        logger.info(
            "Batch %d: %d processed (%d created, %d updated, %d existing, %d errors)",
            batch_number,
            batch.processed,
            batch.created,
            batch.updated,
            batch.existing,
            batch.errors,
        )
        if batch_row is not None:
            finish = self.tracker.cancel_batch if cancelled else self.tracker.complete_batch
            finish(
                batch_row.id,
                TargetProcessor.get_batch_stats(results),
                retry_count=_retries(run, attempts_before, len(results)),
                processing_time_ms=_elapsed_ms(started),
            )
        return batch

    def _start_batch_row(self, run: PreparedRun, records: List[Mapping[str, Any]], batch_number: int):
        # stream_and_process runs have no session and keep no batch rows
        if run.session_id is None:
            return None
        return self.tracker.start_batch(
            run.session_id,
            batch_number,
            batch_size=len(records),
            source_ids=[raw.get("id") for raw in records],
        )

    async def _write_record(self, run: PreparedRun, raw: Mapping[str, Any], actor: Any) -> ProcessResult:
        pc = run.config.processing_config

        def work():
            run.write_attempts += 1
            return self.processor.process_record(run.processor_state, raw, actor=actor)

        if not pc.enable_error_recovery and not pc.enable_circuit_breaker:
            return await work()

        attempts = pc.max_recovery_attempts if pc.enable_error_recovery else 1
        policy = resolve_policy(pc.retry_policy).with_overrides(max_attempts=attempts)
        context = RetryContext(
            retry_policy=policy,
            circuit_breaker=pc.enable_circuit_breaker,
            session_id=run.session_id,
            resource_type=run.config.target_resource,
            cancel_event=run.cancel_event,
        )
        return await self.retry_engine.execute_with_retry(
            f"sync:{run.config.target_resource}", work, context
        )

    # ─── Bookkeeping ──────────────────────────────────────────────────────────

    @staticmethod
    def _accumulate(stats: Dict[str, int], batch: BatchResult) -> None:
        stats["total_processed"] += batch.processed
        stats["created"] += batch.created
        stats["updated"] += batch.updated
        stats["existing"] += batch.existing
        stats["errors"] += batch.errors

    async def _publish(self, run: PreparedRun, event_type: str, payload: Mapping[str, Any]) -> None:
        if self.broadcaster is None or run.session_id is None:
            return
        pubsub = run.config.pubsub_config
        if pubsub is not None and not pubsub.enabled:
            return
        topic = pubsub.topic if pubsub is not None else DEFAULT_TOPIC
        await self.broadcaster.broadcast_session_event(run.session_id, event_type, payload, topic=topic)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _progress_stats(stats: Mapping[str, int]) -> Dict[str, int]:
    return {
        "processed": stats["total_processed"],
        "created": stats["created"],
        "updated": stats["updated"],
        "existing": stats["existing"],
        "errors": stats["errors"],
    }


def _progress_payload(session_id: str, status: str, batch_number: Optional[int], stats: Mapping[str, int]) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "status": status,
        "batch_number": batch_number,
        "current_page": batch_number,
        "pages_processed": batch_number,
        "items_found": stats["total_processed"],
        "items_created": stats["created"],
        "items_updated": stats["updated"],
        "items_existing": stats["existing"],
        "errors_count": stats["errors"],
    }


def _batch_result(batch_number: int, results: List[ProcessResult], cancelled: bool = False) -> BatchResult:
    stats = TargetProcessor.get_batch_stats(results)
    return BatchResult(
        batch_number=batch_number,
        processed=stats["total"],
        created=stats["created"],
        updated=stats["updated"],
        existing=stats["existing"],
        errors=stats["errors"],
        cancelled=cancelled,
        results=results,
    )


def _retries(run: PreparedRun, attempts_before: int, records_written: int) -> int:
    return max(run.write_attempts - attempts_before - records_written, 0)
