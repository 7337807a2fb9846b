"""Recovery decisions for failed sync operations."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from datasync.errors import RetryExhaustedError
from datasync.sync.error_classifier import (
    CRITICAL,
    DATA,
    NETWORK,
    PERFORMANCE,
    VALIDATION,
    ErrorClassification,
    ErrorClassifier,
)

logger = logging.getLogger(__name__)

AUTOMATIC_RETRY = "automatic_retry"
DATA_CORRECTION = "data_correction"
SYSTEM_ADJUSTMENT = "system_adjustment"
MANUAL_INTERVENTION = "manual_intervention"
GRACEFUL_DEGRADATION = "graceful_degradation"

SMALL_BATCH = 10
LARGE_BATCH = 100


@dataclass
class RecoveryDecision:
    strategy: str
    reason: str
    classification: ErrorClassification
    fatal: bool = False
    configuration: Dict[str, Any] = field(default_factory=dict)


class ErrorRecovery:
    """Chooses what to do about an error the retry engine could not absorb.

    A fatal decision stops the whole sync run; anything else is isolated to
    the failing record and counted in progress_stats.errors.
    """

    def __init__(self, classifier: Optional[ErrorClassifier] = None):
        self.classifier = classifier or ErrorClassifier()

    def decide(self, error: BaseException, context: Optional[Mapping[str, Any]] = None) -> RecoveryDecision:
        context = dict(context or {})
        c = self.classifier.classify(error, context)
        batch_size = int(context.get("batch_size", 0))
        exhausted = isinstance(error, RetryExhaustedError)

        if c.subcategory == "circuit_open":
            decision = RecoveryDecision(
                GRACEFUL_DEGRADATION, "circuit_open", c, fatal=True,
                configuration={"notification_required": True},
            )
        elif c.category == NETWORK and exhausted:
            decision = RecoveryDecision(
                MANUAL_INTERVENTION, "network_unavailable_after_retries", c, fatal=True,
                configuration={"escalation_required": True},
            )
        elif c.category == NETWORK and c.severity != CRITICAL:
            decision = RecoveryDecision(
                AUTOMATIC_RETRY, "transient_network_issue", c,
                configuration={"max_attempts": 5, "backoff_strategy": "exponential"},
            )
        elif c.category == VALIDATION:
            decision = RecoveryDecision(
                DATA_CORRECTION,
                "small_batch_data_issue" if 0 < batch_size <= SMALL_BATCH else "invalid_source_data",
                c,
                configuration={"correction_strategy": "skip_invalid_records"},
            )
        elif c.category == PERFORMANCE and batch_size > LARGE_BATCH:
            decision = RecoveryDecision(
                SYSTEM_ADJUSTMENT, "performance_optimization_needed", c,
                configuration={
                    "adjustment_type": "reduce_batch_size",
                    "target_batch_size": max(SMALL_BATCH, batch_size // 2),
                },
            )
        elif c.category == DATA and c.severity == CRITICAL:
            decision = RecoveryDecision(
                MANUAL_INTERVENTION, "critical_data_integrity_issue", c,
                configuration={"escalation_required": True},
            )
        else:
            decision = RecoveryDecision(
                GRACEFUL_DEGRADATION, "general_error_handling", c,
                configuration={"degradation_level": "partial_operation"},
            )

        logger.debug(
            "Recovery for %s/%s: %s (fatal=%s)",
            c.category,
            c.subcategory,
            decision.strategy,
            decision.fatal,
        )
        return decision
