"""Sync session and batch models: one row per sync run, one per batch."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

PENDING = "pending"
RUNNING = "running"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATUSES = frozenset({PENDING, RUNNING, PAUSED})
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})

SESSION_ID_PATTERN = r"^sync_[a-zA-Z0-9_-]+$"
TARGET_RESOURCE_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$"

EMPTY_PROGRESS = {"processed": 0, "created": 0, "updated": 0, "existing": 0, "errors": 0}

BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
BATCH_CANCELLED = "cancelled"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values read back from stores that drop the offset."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _duration(started_at: Optional[datetime], completed_at: Optional[datetime]) -> Optional[float]:
    if started_at is None:
        return None
    end = as_utc(completed_at) or datetime.now(timezone.utc)
    return max((end - as_utc(started_at)).total_seconds(), 0.0)


class SyncSession(SQLModel, table=True):
    """Lifecycle and progress of one sync execution.

    Map-valued columns are stored as JSON; always assign a new dict rather
    than mutating in place so SQLAlchemy sees the change.
    """

    __tablename__ = "sync_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True, unique=True)
    sync_type: str
    target_resource: str
    source_adapter: str
    status: str = Field(default=PENDING, index=True)
    estimated_total: Optional[int] = None
    progress_stats: Dict[str, int] = Field(
        default_factory=lambda: dict(EMPTY_PROGRESS), sa_column=Column(JSON)
    )
    error_count: int = 0
    final_stats: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_info: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # ─── Computed metrics ─────────────────────────────────────────────────────

    @property
    def processed(self) -> int:
        return int((self.progress_stats or {}).get("processed", 0))

    @property
    def completion_percentage(self) -> float:
        if not self.estimated_total:
            return 0.0
        return round(100.0 * self.processed / self.estimated_total, 2)

    @property
    def duration_seconds(self) -> Optional[float]:
        return _duration(self.started_at, self.completed_at)

    @property
    def processing_speed_records_per_minute(self) -> float:
        seconds = self.duration_seconds
        if not seconds:
            return 0.0
        return round(self.processed / (seconds / 60.0), 2)

    @property
    def error_rate_percentage(self) -> float:
        if not self.estimated_total:
            return 0.0
        return round(100.0 * self.error_count / self.estimated_total, 2)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class SyncBatch(SQLModel, table=True):
    """One batch of a sync session: the source ids it covered and its outcome."""

    __tablename__ = "sync_batches"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    batch_number: int = Field(ge=1)
    batch_size: int = Field(ge=1)
    status: str = Field(default=BATCH_PROCESSING, index=True)
    source_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_existing: int = 0
    records_failed: int = 0
    retry_count: int = 0
    error_details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success_rate_percentage(self) -> float:
        if not self.records_processed:
            return 0.0
        ok = self.records_created + self.records_updated + self.records_existing
        return round(100.0 * ok / self.records_processed, 2)

    @property
    def error_rate_percentage(self) -> float:
        if not self.records_processed:
            return 0.0
        return round(100.0 * self.records_failed / self.records_processed, 2)

    @property
    def has_errors(self) -> bool:
        return self.records_failed > 0

    @property
    def is_active(self) -> bool:
        return self.status == BATCH_PROCESSING

    @property
    def duration_seconds(self) -> Optional[float]:
        return _duration(self.started_at, self.completed_at)
