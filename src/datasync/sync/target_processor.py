"""
TargetProcessor — maps raw source records onto a target resource.

Flow for one record:
  1. Flatten the raw record (flat map or {"id", "fields"} shape)
  2. Check required source fields, apply transformations
  3. Map source fields to target attributes via field_mapping
  4. Look up an existing target record by unique_field
  5. Create, update, skip or reject per duplicate_strategy

Idempotency: an update whose mapped values equal the stored ones reports
"existing" and performs no write.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from datasync.adapters.base import normalize_record
from datasync.db.resource import TargetResource
from datasync.errors import (
    ConfigurationError,
    ConstraintError,
    MissingConfigFieldsError,
    RecordValidationError,
    SyncError,
    as_sync_error,
)
from datasync.sync.config import TargetConfig
from datasync.sync.registry import SyncRegistry
from datasync.sync.transforms import apply_transformations
from datasync.sync.validation import validate_record

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
EXISTING = "existing"
ERROR = "error"

REQUIRED_CONFIG_FIELDS = ("unique_field",)


@dataclass
class ProcessorState:
    target_resource: str
    resource: TargetResource
    config: TargetConfig


@dataclass
class ProcessResult:
    outcome: str
    record: Any = None
    error: Optional[SyncError] = None
    source_id: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome != ERROR


def map_record_fields(raw_record: Mapping[str, Any], config: TargetConfig) -> Dict[str, Any]:
    """Apply transformations, validation rules and field_mapping to one raw record.

    Unmapped source fields are dropped and None values are skipped. With an
    empty mapping every source field except the record id passes through
    under its own name.
    """
    fields = normalize_record(raw_record)
    missing = [name for name in config.required_fields if fields.get(name) in (None, "")]
    if missing:
        raise RecordValidationError(
            [{"field": name, "message": "required source field is missing"} for name in missing]
        )

    fields = apply_transformations(fields, config.transformations)
    validate_record(fields, config.validation_rules)

    if not config.field_mapping:
        return {k: v for k, v in fields.items() if k != "id" and v is not None}

    mapped = {}
    for source_field, target_attr in config.field_mapping.items():
        value = fields.get(source_field)
        if value is not None:
            mapped[target_attr] = value
    return mapped


class TargetProcessor:
    def __init__(self, registry: SyncRegistry):
        self.registry = registry

    def initialize(
        self,
        target_resource: str,
        config: Union[TargetConfig, Mapping[str, Any]],
    ) -> ProcessorState:
        """
        Resolve the target resource and validate its config.

        Raises:
            MissingConfigFieldsError: unique_field (or another mandatory key) absent.
            TargetResolutionError: target_resource is not registered.
            ConfigurationError: config values are invalid.
        """
        if not isinstance(config, TargetConfig):
            missing = [f for f in REQUIRED_CONFIG_FIELDS if not config.get(f)]
            if missing:
                raise MissingConfigFieldsError(missing)
            try:
                config = TargetConfig.model_validate(dict(config))
            except ValidationError as exc:
                raise ConfigurationError(f"invalid target config: {exc}") from exc

        resource = self.registry.resolve_resource(target_resource)
        for action in (config.create_action, config.update_action):
            if not resource.supports_action(action):
                raise ConfigurationError(f"{target_resource} has no action '{action}'")
        return ProcessorState(target_resource=target_resource, resource=resource, config=config)

    async def process_record(
        self,
        state: ProcessorState,
        raw_record: Mapping[str, Any],
        config: Optional[TargetConfig] = None,
        actor: Any = None,
    ) -> ProcessResult:
        """
        Create or update the target record for one raw source record.

        Returns:
            ProcessResult with outcome created, updated or existing.

        Raises:
            SyncError: mapping, validation, or write failure.
        """
        config = config or state.config
        resource = state.resource
        source_id = raw_record.get("id")

        try:
            attrs = map_record_fields(raw_record, config)
        except SyncError:
            raise
        except Exception as exc:
            raise as_sync_error(exc) from exc

        key = attrs.get(config.unique_field)
        if key is None:
            raise RecordValidationError(
                [{"field": config.unique_field, "message": "unique field has no value"}]
            )

        existing = await resource.get_by(config.unique_field, key)
        if existing is None:
            try:
                record = await resource.create(attrs, action=config.create_action, actor=actor)
                logger.debug("Created %s %s=%s", state.target_resource, config.unique_field, key)
                return ProcessResult(CREATED, record, source_id=source_id)
            except ConstraintError:
                # lost a race with a concurrent writer; treat as duplicate
                existing = await resource.get_by(config.unique_field, key)
                if existing is None:
                    raise

        return await self._handle_duplicate(state, existing, attrs, config, actor, source_id)

    async def _handle_duplicate(self, state, existing, attrs, config, actor, source_id) -> ProcessResult:
        strategy = config.duplicate_strategy
        if strategy == "skip":
            return ProcessResult(EXISTING, existing, source_id=source_id)
        if strategy == "error":
            raise ConstraintError(
                "duplicate_record",
                f"{state.target_resource} with {config.unique_field}="
                f"{attrs.get(config.unique_field)!r} already exists",
            )

        current = state.resource.to_dict(existing)
        changes = {k: v for k, v in attrs.items() if current.get(k) != v}
        if not changes:
            return ProcessResult(EXISTING, existing, source_id=source_id)
        record = await state.resource.update(existing, changes, action=config.update_action, actor=actor)
        logger.debug("Updated %s fields %s", state.target_resource, sorted(changes))
        return ProcessResult(UPDATED, record, source_id=source_id)

    async def process_batch(
        self,
        state: ProcessorState,
        records: Sequence[Mapping[str, Any]],
        config: Optional[TargetConfig] = None,
        actor: Any = None,
    ) -> List[ProcessResult]:
        """Process every record; one failure never aborts the rest."""
        results = []
        for raw in records:
            try:
                results.append(await self.process_record(state, raw, config, actor))
            except Exception as exc:
                error = as_sync_error(exc)
                logger.warning("Record %s failed: %s", raw.get("id"), error)
                results.append(ProcessResult(ERROR, error=error, source_id=raw.get("id")))
        return results

    @staticmethod
    def get_batch_stats(results: Sequence[ProcessResult]) -> Dict[str, int]:
        stats = {"total": len(results), CREATED: 0, UPDATED: 0, EXISTING: 0, "errors": 0}
        for r in results:
            if r.outcome == ERROR:
                stats["errors"] += 1
            else:
                stats[r.outcome] += 1
        return stats
