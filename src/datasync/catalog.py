"""
Bundled sync jobs: Airtable -> cases / notices.

build_runtime() wires the registry, session tracker, retry engine,
broadcaster, integrity verifier and sync engine around one database
engine. The CLI and the scheduler both start from here.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from datasync.adapters.memory import MemorySourceAdapter
from datasync.airtable.adapter import AirtableSourceAdapter
from datasync.config import get_settings
from datasync.db.resource import SQLModelResource
from datasync.models.enforcement import Case, Notice
from datasync.retry.circuit_breaker import CircuitBreakerRegistry
from datasync.retry.engine import RetryEngine
from datasync.sync.config import ProcessingConfig, SyncConfig, TargetConfig
from datasync.sync.engine import SyncEngine
from datasync.sync.error_classifier import ErrorClassifier
from datasync.sync.events import EventBroadcaster
from datasync.sync.integrity import IntegrityBinding, IntegrityVerifier
from datasync.sync.registry import SyncRegistry
from datasync.sync.session_tracker import SessionTracker

CASES_TABLE = "Cases"
NOTICES_TABLE = "Notices"

CASE_TARGET = TargetConfig(
    unique_field="regulator_id",
    field_mapping={
        "regulator_id": "regulator_id",
        "offender_name": "offender_name",
        "agency_code": "agency_code",
        "offence_action_date": "offence_action_date",
        "offence_result": "offence_result",
        "offence_fine": "offence_fine",
        "offence_costs": "offence_costs",
        "offence_breaches": "offence_breaches",
    },
    transformations=[
        ("trim_strings", ["regulator_id", "offender_name", "offence_result"]),
        ("normalize_dates", ["offence_action_date"]),
        ("normalize_numbers", ["offence_fine", "offence_costs"]),
    ],
    required_fields=["regulator_id", "offender_name"],
)

NOTICE_TARGET = TargetConfig(
    unique_field="regulator_id",
    field_mapping={
        "regulator_id": "regulator_id",
        "offender_name": "offender_name",
        "agency_code": "agency_code",
        "offence_action_type": "offence_action_type",
        "notice_date": "notice_date",
        "compliance_date": "compliance_date",
        "notice_body": "notice_body",
    },
    transformations=[
        ("trim_strings", ["regulator_id", "offender_name"]),
        ("normalize_dates", ["notice_date", "compliance_date"]),
    ],
    required_fields=["regulator_id", "offender_name"],
)


@dataclass
class Runtime:
    registry: SyncRegistry
    tracker: SessionTracker
    retry_engine: RetryEngine
    broadcaster: EventBroadcaster
    verifier: IntegrityVerifier
    sync_engine: SyncEngine


def build_registry(engine, retry_engine: Optional[RetryEngine] = None) -> SyncRegistry:
    registry = SyncRegistry()
    registry.register_resource(SQLModelResource(Case, engine, name="cases"))
    registry.register_resource(SQLModelResource(Notice, engine, name="notices"))
    registry.register_adapter("memory", MemorySourceAdapter)
    registry.register_adapter("airtable", lambda: AirtableSourceAdapter(retry_engine=retry_engine))
    return registry


def sync_configs(batch_size: Optional[int] = None) -> Dict[str, SyncConfig]:
    """The jobs runnable by name from the CLI and the nightly schedule."""
    processing = ProcessingConfig(batch_size=batch_size or get_settings().default_batch_size)
    return {
        "import_cases": SyncConfig(
            source_adapter="airtable",
            source_config={"table_id": CASES_TABLE},
            target_resource="cases",
            target_config=CASE_TARGET,
            processing_config=processing,
        ),
        "import_notices": SyncConfig(
            source_adapter="airtable",
            source_config={"table_id": NOTICES_TABLE},
            target_resource="notices",
            target_config=NOTICE_TARGET,
            processing_config=processing,
        ),
    }


def integrity_bindings() -> List[IntegrityBinding]:
    return [
        IntegrityBinding("cases", "airtable", {"table_id": CASES_TABLE}, "cases", CASE_TARGET),
        IntegrityBinding("notices", "airtable", {"table_id": NOTICES_TABLE}, "notices", NOTICE_TARGET),
    ]


def build_runtime(engine) -> Runtime:
    settings = get_settings()
    classifier = ErrorClassifier()
    retry_engine = RetryEngine(
        CircuitBreakerRegistry(
            default_failure_threshold=settings.circuit_failure_threshold,
            default_cooldown_ms=settings.circuit_cooldown_ms,
        ),
        classifier=classifier,
    )
    registry = build_registry(engine, retry_engine)
    broadcaster = EventBroadcaster()
    verifier = IntegrityVerifier(registry, integrity_bindings(), broadcaster=broadcaster)
    tracker = SessionTracker(engine)
    sync_engine = SyncEngine(
        registry,
        tracker,
        retry_engine=retry_engine,
        broadcaster=broadcaster,
        verifier=verifier,
        classifier=classifier,
    )
    return Runtime(registry, tracker, retry_engine, broadcaster, verifier, sync_engine)
