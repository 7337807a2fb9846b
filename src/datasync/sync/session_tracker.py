"""
SessionTracker — persists the lifecycle of each sync run.

    pending -> running -> completed | failed | cancelled
    running <-> paused
    pending | paused -> cancelled

Every transition is checked against the table below; anything else raises
InvalidSessionTransitionError and leaves the row untouched.

Each batch of a running session gets a SyncBatch row:

    processing -> completed | failed | cancelled
"""
import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlmodel import Session, select

from datasync.errors import InvalidSessionTransitionError, SessionNotFoundError
from datasync.models.sync import (
    CANCELLED,
    COMPLETED,
    EMPTY_PROGRESS,
    FAILED,
    PAUSED,
    PENDING,
    RUNNING,
    SESSION_ID_PATTERN,
    TARGET_RESOURCE_PATTERN,
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_PROCESSING,
    SyncBatch,
    SyncSession,
    as_utc,
)

logger = logging.getLogger(__name__)

# target status -> statuses it may be entered from
TRANSITIONS: Dict[str, frozenset] = {
    RUNNING: frozenset({PENDING, PAUSED}),
    PAUSED: frozenset({RUNNING}),
    COMPLETED: frozenset({RUNNING}),
    FAILED: frozenset({RUNNING}),
    CANCELLED: frozenset({PENDING, RUNNING, PAUSED}),
}


def generate_session_id() -> str:
    return f"sync_{secrets.token_hex(8)}"


class SessionTracker:
    def __init__(self, engine):
        self.engine = engine

    def start_session(
        self,
        *,
        sync_type: str,
        target_resource: str,
        source_adapter: str,
        config: Optional[Mapping[str, Any]] = None,
        estimated_total: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> SyncSession:
        """Create a pending session row and stamp started_at."""
        session_id = session_id or generate_session_id()
        if not re.match(SESSION_ID_PATTERN, session_id):
            raise ValueError(f"invalid session_id: {session_id}")
        if not re.match(TARGET_RESOURCE_PATTERN, target_resource):
            raise ValueError(f"invalid target_resource: {target_resource}")
        if estimated_total is not None and estimated_total < 0:
            raise ValueError("estimated_total must be >= 0")

        row = SyncSession(
            session_id=session_id,
            sync_type=sync_type,
            target_resource=target_resource,
            source_adapter=source_adapter,
            status=PENDING,
            estimated_total=estimated_total,
            progress_stats=dict(EMPTY_PROGRESS),
            config=dict(config or {}),
            started_at=datetime.now(timezone.utc),
        )
        with Session(self.engine) as s:
            s.add(row)
            s.commit()
            s.refresh(row)
        logger.info("Session %s started (%s -> %s)", session_id, source_adapter, target_resource)
        return row

    def get_session(self, session_id: str) -> SyncSession:
        with Session(self.engine) as s:
            row = s.exec(select(SyncSession).where(SyncSession.session_id == session_id)).first()
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    def list_sessions(self, status: Optional[str] = None, limit: int = 50) -> List[SyncSession]:
        with Session(self.engine) as s:
            query = select(SyncSession)
            if status:
                query = query.where(SyncSession.status == status)
            query = query.order_by(SyncSession.id.desc()).limit(limit)
            return list(s.exec(query).all())

    def mark_running(self, session_id: str) -> SyncSession:
        return self._transition(session_id, RUNNING)

    def pause_session(self, session_id: str) -> SyncSession:
        return self._transition(session_id, PAUSED)

    def resume_session(self, session_id: str) -> SyncSession:
        return self._transition(session_id, RUNNING)

    def complete_session(
        self,
        session_id: str,
        final_stats: Mapping[str, Any],
        processing_time_ms: Optional[int] = None,
    ) -> SyncSession:
        return self._transition(
            session_id,
            COMPLETED,
            final_stats=dict(final_stats),
            processing_time_ms=processing_time_ms,
        )

    def fail_session(
        self,
        session_id: str,
        error_info: Mapping[str, Any],
        processing_time_ms: Optional[int] = None,
    ) -> SyncSession:
        return self._transition(
            session_id,
            FAILED,
            error_info=dict(error_info),
            processing_time_ms=processing_time_ms,
        )

    def cancel_session(self, session_id: str, processing_time_ms: Optional[int] = None) -> SyncSession:
        return self._transition(session_id, CANCELLED, processing_time_ms=processing_time_ms)

    def update_progress(
        self,
        session_id: str,
        progress: Mapping[str, int],
        *,
        error_count: Optional[int] = None,
        estimated_total: Optional[int] = None,
    ) -> SyncSession:
        """Merge progress counters into the row. Status is unchanged."""
        negative = [k for k, v in progress.items() if v < 0]
        if negative or (error_count is not None and error_count < 0):
            raise ValueError(f"progress values must be non-negative: {negative or ['error_count']}")

        with Session(self.engine) as s:
            row = self._load(s, session_id)
            merged = dict(row.progress_stats or EMPTY_PROGRESS)
            merged.update({k: int(v) for k, v in progress.items()})
            row.progress_stats = merged
            if error_count is not None:
                row.error_count = error_count
            if estimated_total is not None:
                row.estimated_total = estimated_total
            row.updated_at = datetime.now(timezone.utc)
            s.add(row)
            s.commit()
            s.refresh(row)

        if row.estimated_total is not None and row.processed > row.estimated_total:
            logger.warning(
                "Session %s processed %d records, more than the estimated %d",
                session_id,
                row.processed,
                row.estimated_total,
            )
        return row

    # ─── Batches ──────────────────────────────────────────────────────────────

    def start_batch(
        self,
        session_id: str,
        batch_number: int,
        *,
        batch_size: int,
        source_ids: Optional[List[Any]] = None,
    ) -> SyncBatch:
        """Record a batch as processing. The session must exist."""
        if batch_number < 1 or batch_size < 1:
            raise ValueError("batch_number and batch_size must be >= 1")
        row = SyncBatch(
            session_id=session_id,
            batch_number=batch_number,
            batch_size=batch_size,
            status=BATCH_PROCESSING,
            source_ids=[str(i) for i in (source_ids or []) if i is not None],
            started_at=datetime.now(timezone.utc),
        )
        with Session(self.engine) as s:
            self._load(s, session_id)
            s.add(row)
            s.commit()
            s.refresh(row)
        return row

    def update_batch_progress(
        self, batch_id: int, counts: Mapping[str, int], *, retry_count: Optional[int] = None
    ) -> SyncBatch:
        with Session(self.engine) as s:
            row = self._load_batch(s, batch_id)
            if row.status != BATCH_PROCESSING:
                raise InvalidSessionTransitionError(f"batch {batch_id}", row.status, BATCH_PROCESSING)
            _apply_counts(row, counts, retry_count)
            row.updated_at = datetime.now(timezone.utc)
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def complete_batch(
        self,
        batch_id: int,
        counts: Mapping[str, int],
        *,
        retry_count: Optional[int] = None,
        processing_time_ms: Optional[int] = None,
    ) -> SyncBatch:
        return self._finish_batch(batch_id, BATCH_COMPLETED, counts, retry_count, processing_time_ms)

    def fail_batch(
        self,
        batch_id: int,
        error_details: Mapping[str, Any],
        counts: Optional[Mapping[str, int]] = None,
        *,
        retry_count: Optional[int] = None,
        processing_time_ms: Optional[int] = None,
    ) -> SyncBatch:
        return self._finish_batch(
            batch_id, BATCH_FAILED, counts or {}, retry_count, processing_time_ms, error_details=dict(error_details)
        )

    def cancel_batch(
        self,
        batch_id: int,
        counts: Optional[Mapping[str, int]] = None,
        *,
        retry_count: Optional[int] = None,
        processing_time_ms: Optional[int] = None,
    ) -> SyncBatch:
        return self._finish_batch(batch_id, BATCH_CANCELLED, counts or {}, retry_count, processing_time_ms)

    def list_batches(self, session_id: str) -> List[SyncBatch]:
        with Session(self.engine) as s:
            query = select(SyncBatch).where(SyncBatch.session_id == session_id).order_by(SyncBatch.batch_number)
            return list(s.exec(query).all())

    @staticmethod
    def snapshot(row: SyncSession) -> Dict[str, Any]:
        return {
            "session_id": row.session_id,
            "sync_type": row.sync_type,
            "target_resource": row.target_resource,
            "source_adapter": row.source_adapter,
            "status": row.status,
            "estimated_total": row.estimated_total,
            "progress_stats": dict(row.progress_stats or {}),
            "error_count": row.error_count,
            "final_stats": row.final_stats,
            "error_info": row.error_info,
            "config": row.config,
            "started_at": row.started_at.isoformat() if row.started_at else None,
            "completed_at": row.completed_at.isoformat() if row.completed_at else None,
            "processing_time_ms": row.processing_time_ms,
            "completion_percentage": row.completion_percentage,
            "processing_speed_records_per_minute": row.processing_speed_records_per_minute,
            "error_rate_percentage": row.error_rate_percentage,
            "is_active": row.is_active,
        }

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _load(s: Session, session_id: str) -> SyncSession:
        row = s.exec(select(SyncSession).where(SyncSession.session_id == session_id)).first()
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    def _transition(self, session_id: str, target: str, **changes) -> SyncSession:
        with Session(self.engine) as s:
            row = self._load(s, session_id)
            if row.status not in TRANSITIONS[target]:
                raise InvalidSessionTransitionError(session_id, row.status, target)

            now = datetime.now(timezone.utc)
            previous = row.status
            row.status = target
            row.updated_at = now
            if target in (COMPLETED, FAILED, CANCELLED):
                row.completed_at = now
                elapsed = changes.pop("processing_time_ms", None)
                if elapsed is None and row.started_at is not None:
                    elapsed = int((now - as_utc(row.started_at)).total_seconds() * 1000)
                row.processing_time_ms = max(int(elapsed or 0), 0)
            for key, value in changes.items():
                if value is not None:
                    setattr(row, key, value)
            s.add(row)
            s.commit()
            s.refresh(row)

        logger.info("Session %s: %s -> %s", session_id, previous, target)
        return row

    @staticmethod
    def _load_batch(s: Session, batch_id: int) -> SyncBatch:
        row = s.get(SyncBatch, batch_id)
        if row is None:
            raise SessionNotFoundError(f"batch {batch_id}")
        return row

    def _finish_batch(self, batch_id, status, counts, retry_count, processing_time_ms, **changes) -> SyncBatch:
        with Session(self.engine) as s:
            row = self._load_batch(s, batch_id)
            if row.status != BATCH_PROCESSING:
                raise InvalidSessionTransitionError(f"batch {batch_id}", row.status, status)
            now = datetime.now(timezone.utc)
            _apply_counts(row, counts, retry_count)
            row.status = status
            row.completed_at = now
            row.updated_at = now
            if processing_time_ms is None and row.started_at is not None:
                processing_time_ms = int((now - as_utc(row.started_at)).total_seconds() * 1000)
            row.processing_time_ms = max(int(processing_time_ms or 0), 0)
            for key, value in changes.items():
                setattr(row, key, value)
            s.add(row)
            s.commit()
            s.refresh(row)

        logger.debug("Batch %d of %s: %s", row.batch_number, row.session_id, status)
        return row


# batch stats key -> SyncBatch column
_BATCH_COUNTS = {
    "total": "records_processed",
    "created": "records_created",
    "updated": "records_updated",
    "existing": "records_existing",
    "errors": "records_failed",
}


def _apply_counts(row: SyncBatch, counts: Mapping[str, int], retry_count: Optional[int]) -> None:
    for key, column in _BATCH_COUNTS.items():
        if key in counts:
            value = int(counts[key])
            if value < 0:
                raise ValueError(f"{key} must be non-negative")
            setattr(row, column, value)
    if retry_count is not None:
        row.retry_count = max(int(retry_count), 0)
