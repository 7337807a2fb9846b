"""Pydantic models for the configuration accepted by SyncEngine.execute_sync."""
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from datasync.adapters.base import SourceAdapter
from datasync.errors import SyncInitializationError
from datasync.models.sync import TARGET_RESOURCE_PATTERN
from datasync.retry.policies import DEFAULT_POLICIES, RetryPolicy
from datasync.sync.transforms import validate_transformations
from datasync.sync.validation import validate_rules

MAX_BATCH_SIZE = 1000


class TargetConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    unique_field: str
    create_action: str = "create"
    update_action: str = "update"
    field_mapping: Dict[str, str] = Field(default_factory=dict)
    duplicate_strategy: Literal["update", "skip", "error"] = "update"
    transformations: List[Any] = Field(default_factory=list)
    required_fields: List[str] = Field(default_factory=list)
    validation_rules: List[Any] = Field(default_factory=list)

    @field_validator("transformations")
    @classmethod
    def _check_transformations(cls, value):
        return validate_transformations(value)

    @field_validator("validation_rules")
    @classmethod
    def _check_validation_rules(cls, value):
        return validate_rules(value)


class ProcessingConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    batch_size: int = Field(default=100, gt=0, le=MAX_BATCH_SIZE)
    limit: Optional[int] = Field(default=None, gt=0)
    enable_error_recovery: bool = True
    enable_integrity_monitoring: bool = False
    enable_circuit_breaker: bool = False
    max_recovery_attempts: int = Field(default=3, ge=1)
    retry_policy: Union[RetryPolicy, str] = "database_operations"

    @field_validator("retry_policy")
    @classmethod
    def _check_policy(cls, value):
        if isinstance(value, str) and value not in DEFAULT_POLICIES:
            raise ValueError(f"unknown retry policy: {value}")
        return value


class SessionConfig(BaseModel):
    sync_type: str = "sync"


class PubSubConfig(BaseModel):
    topic: str = "sync_progress"
    enabled: bool = True


class SyncConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    source_adapter: Union[str, SourceAdapter]
    source_config: Dict[str, Any] = Field(default_factory=dict)
    target_resource: str = Field(pattern=TARGET_RESOURCE_PATTERN)
    target_config: TargetConfig
    processing_config: ProcessingConfig = Field(default_factory=ProcessingConfig)
    session_config: SessionConfig = Field(default_factory=SessionConfig)
    pubsub_config: Optional[PubSubConfig] = None

    @property
    def source_adapter_name(self) -> str:
        if isinstance(self.source_adapter, str):
            return self.source_adapter
        return getattr(self.source_adapter, "name", type(self.source_adapter).__name__)

    def summary(self) -> Dict[str, Any]:
        """JSON-safe view stored on the session row."""
        return {
            "source_adapter": self.source_adapter_name,
            "target_resource": self.target_resource,
            "sync_type": self.session_config.sync_type,
            "batch_size": self.processing_config.batch_size,
            "limit": self.processing_config.limit,
            "unique_field": self.target_config.unique_field,
            "duplicate_strategy": self.target_config.duplicate_strategy,
            "enable_error_recovery": self.processing_config.enable_error_recovery,
            "enable_circuit_breaker": self.processing_config.enable_circuit_breaker,
        }


def validate_sync_config(config: Union[SyncConfig, Mapping[str, Any]]) -> SyncConfig:
    """Return a validated SyncConfig.

    Raises:
        SyncInitializationError: with a list of {field, message} details.
    """
    if isinstance(config, SyncConfig):
        return config
    try:
        return SyncConfig.model_validate(dict(config))
    except ValidationError as exc:
        detail = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in exc.errors()
        ]
        raise SyncInitializationError(detail) from exc
