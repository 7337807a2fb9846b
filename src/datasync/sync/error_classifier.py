"""
Error classification for sync operations.

classify() maps a raised error plus its operation context onto a fixed
decision table keyed by SyncError variant. Raw library exceptions are first
converted with errors.as_sync_error, so the table stays exhaustive.

Also provides pattern analysis over a history of classified errors and
audience-specific renderings (user / admin / technical / monitoring).
"""
import hashlib
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from datasync.errors import (
    CircuitOpenError,
    ConstraintError,
    NetworkError,
    PerformanceError,
    RateLimitedError,
    RecordValidationError,
    RetryExhaustedError,
    SyncError,
    as_sync_error,
)
from datasync.retry.policies import EXPONENTIAL, LINEAR, RetryPolicy

logger = logging.getLogger(__name__)

NETWORK = "sync_network_error"
DATA = "sync_data_error"
VALIDATION = "sync_validation_error"
PERFORMANCE = "sync_performance_error"
APPLICATION = "application_error"

LOW = "low"
MEDIUM = "medium"
CRITICAL = "critical"

CHANNELS_BY_SEVERITY: Dict[str, FrozenSet[str]] = {
    CRITICAL: frozenset({"email", "slack", "pager"}),
    MEDIUM: frozenset({"slack"}),
    LOW: frozenset({"log_only"}),
}

# Consecutive failures at which even transient errors stop being retried.
MAX_CONSECUTIVE_FAILURES = 5

NETWORK_RETRY = RetryPolicy(
    strategy=EXPONENTIAL,
    max_attempts=5,
    base_delay_ms=1000,
    max_delay_ms=30_000,
    multiplier=2.0,
    jitter=True,
)
PERFORMANCE_RETRY = RetryPolicy(
    strategy=LINEAR,
    max_attempts=3,
    base_delay_ms=5000,
    max_delay_ms=60_000,
    jitter=False,
)

RECOVERY_ACTIONS: Dict[str, List[str]] = {
    NETWORK: [
        "Check network connectivity to the source API",
        "Verify API rate limits and current usage",
        "Consider implementing request throttling",
        "Retry with exponential backoff",
    ],
    DATA: [
        "Review source data quality and constraints",
        "Check for duplicate records in source system",
        "Validate data transformations and mappings",
        "Consider data cleanup before retry",
    ],
    PERFORMANCE: [
        "Reduce batch size to decrease load",
        "Check database connection pool status",
        "Monitor database performance metrics",
        "Consider processing during off-peak hours",
    ],
    VALIDATION: [
        "Review validation rules for affected resource",
        "Check source data format and completeness",
        "Update data transformation logic if needed",
        "Skip invalid records and continue processing",
    ],
    APPLICATION: [
        "Review error details and context",
        "Check system logs for additional information",
        "Contact technical support if issue persists",
    ],
}

PREVENTION_MEASURES: Dict[str, List[str]] = {
    NETWORK: [
        "Implement circuit breaker pattern for API calls",
        "Add connection pooling and keep-alive settings",
        "Set up monitoring for API endpoint availability",
    ],
    DATA: [
        "Add pre-sync data validation checks",
        "Set up automated data integrity monitoring",
        "Create data cleanup workflows",
    ],
    PERFORMANCE: [
        "Implement adaptive batch sizing based on load",
        "Add database performance monitoring",
        "Set up resource usage alerting",
    ],
    VALIDATION: [
        "Add pre-sync data validation checks",
        "Document required source fields",
    ],
    APPLICATION: [
        "Implement comprehensive error monitoring",
        "Add automated error pattern detection",
    ],
}


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    subcategory: str
    severity: str
    recoverable: bool
    retry_eligible: bool
    retry_strategy: Optional[RetryPolicy]
    notification_channels: FrozenSet[str]
    error_fingerprint: str
    recovery_actions: List[str] = field(default_factory=list)
    prevention_measures: List[str] = field(default_factory=list)
    error_type: str = ""
    message: str = ""
    operation: Optional[str] = None
    resource_type: Optional[str] = None
    classified_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def requires_immediate_attention(self) -> bool:
        return self.severity == CRITICAL

    @property
    def escalation_level(self) -> str:
        return {CRITICAL: "immediate", MEDIUM: "standard"}.get(self.severity, "none")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "severity": self.severity,
            "recoverable": self.recoverable,
            "retry_eligible": self.retry_eligible,
            "notification_channels": sorted(self.notification_channels),
            "error_fingerprint": self.error_fingerprint,
            "error_type": self.error_type,
            "message": self.message,
            "operation": self.operation,
            "resource_type": self.resource_type,
            "classified_at": self.classified_at.isoformat(),
        }


def fingerprint(category: str, subcategory: str, error_type: str, operation: Any, resource_type: Any) -> str:
    """Stable 16-hex-char fingerprint; independent of time and message text."""
    raw = f"{category}:{subcategory}:{error_type}:{operation or ''}:{resource_type or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class ErrorClassifier:
    """Stateless; a single instance may be shared across engines."""

    def classify(self, error: BaseException, context: Optional[Mapping[str, Any]] = None) -> ErrorClassification:
        context = dict(context or {})
        if isinstance(error, RetryExhaustedError) and error.last_error is not None:
            underlying = as_sync_error(error.last_error)
        else:
            underlying = as_sync_error(error)

        category, subcategory, severity, recoverable, retryable, strategy = self._decide(underlying)

        if context.get("consecutive_failures", 0) >= MAX_CONSECUTIVE_FAILURES:
            retryable = False
        if isinstance(error, RetryExhaustedError):
            retryable = False
        if not retryable:
            strategy = None

        operation = context.get("operation")
        resource_type = context.get("resource_type")
        error_type = type(underlying).__name__

        return ErrorClassification(
            category=category,
            subcategory=subcategory,
            severity=severity,
            recoverable=recoverable,
            retry_eligible=retryable,
            retry_strategy=strategy,
            notification_channels=CHANNELS_BY_SEVERITY[severity],
            error_fingerprint=fingerprint(category, subcategory, error_type, operation, resource_type),
            recovery_actions=list(RECOVERY_ACTIONS[category]),
            prevention_measures=list(PREVENTION_MEASURES[category]),
            error_type=error_type,
            message=str(error),
            operation=operation,
            resource_type=resource_type,
        )

    def retry_eligible(self, error: BaseException) -> bool:
        """Default retry predicate for the retry engine."""
        return self.classify(error).retry_eligible

    @staticmethod
    def _decide(error: SyncError):
        # (category, subcategory, severity, recoverable, retry_eligible, strategy)
        if isinstance(error, NetworkError):
            sub = "source_timeout" if error.reason == "timeout" else "source_unreachable"
            return NETWORK, sub, MEDIUM, True, True, NETWORK_RETRY
        if isinstance(error, RateLimitedError):
            return NETWORK, "rate_limited", MEDIUM, True, True, NETWORK_RETRY
        if isinstance(error, CircuitOpenError):
            return NETWORK, "circuit_open", MEDIUM, True, False, None
        if isinstance(error, ConstraintError):
            return DATA, error.kind, CRITICAL, False, False, None
        if isinstance(error, RecordValidationError):
            return VALIDATION, "invalid_source_data", MEDIUM, True, False, None
        if isinstance(error, PerformanceError):
            return PERFORMANCE, "database_overload", MEDIUM, True, True, PERFORMANCE_RETRY
        return APPLICATION, "unknown_error", LOW, False, False, None

    # ─── Pattern analysis ─────────────────────────────────────────────────────

    def analyze_error_patterns(
        self,
        history: Iterable[Any],
        *,
        problematic_threshold: int = 3,
        high_frequency_threshold: int = 2,
        burst_threshold: int = 3,
    ) -> Dict[str, Any]:
        """Summarize a history of classified errors.

        Entries may be ErrorClassification objects or mappings with at least
        category and operation keys, plus an optional occurred_at datetime.
        """
        entries = [_normalize_history_entry(e) for e in history]

        by_category = Counter(e["category"] for e in entries)
        by_operation = Counter(e["operation"] for e in entries if e["operation"])

        high_frequency = sorted(c for c, n in by_category.items() if n >= high_frequency_threshold)
        problematic = [
            {"operation": op, "error_count": n}
            for op, n in by_operation.most_common()
            if n >= problematic_threshold
        ]

        per_hour_bucket: Dict[datetime, int] = defaultdict(int)
        per_hour_of_day: Counter = Counter()
        timestamps = []
        for e in entries:
            ts = e["occurred_at"]
            if ts is None:
                continue
            timestamps.append(ts)
            per_hour_bucket[ts.replace(minute=0, second=0, microsecond=0)] += 1
            per_hour_of_day[ts.hour] += 1

        bursts = [
            {"hour": hour.isoformat(), "error_count": n}
            for hour, n in sorted(per_hour_bucket.items())
            if n >= burst_threshold
        ]
        peak_hours = [hour for hour, _ in per_hour_of_day.most_common(3)]

        if timestamps:
            span_hours = (max(timestamps) - min(timestamps)).total_seconds() / 3600
            frequency = len(entries) / max(span_hours, 1)
        else:
            frequency = float(len(entries))

        return {
            "total_errors": len(entries),
            "by_category": dict(by_category),
            "by_operation": dict(by_operation),
            "high_frequency_errors": high_frequency,
            "problematic_operations": problematic,
            "temporal_patterns": {
                "error_bursts": bursts,
                "peak_hours": peak_hours,
                "errors_per_hour": round(frequency, 2),
            },
            "recommended_actions": _pattern_recommendations(high_frequency, problematic, by_category),
            "infrastructure_improvements": _infrastructure_improvements(by_category),
            "monitoring_enhancements": _monitoring_enhancements(peak_hours, bursts),
        }

    # ─── Audience renderings ──────────────────────────────────────────────────

    def generate_contextual_messages(
        self,
        classification: ErrorClassification,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        context = dict(context or {})
        operation = context.get("operation") or classification.operation or "sync operation"
        record_count = context.get("record_count", 0)
        category = classification.category

        user_messages = {
            NETWORK: f"The {operation} operation is experiencing connectivity issues. Please try again in a few minutes.",
            DATA: "There's an issue with the data being imported. Our team has been notified and will resolve this shortly.",
            VALIDATION: "Some records could not be imported because they are incomplete or malformed.",
            PERFORMANCE: f"The system is currently under heavy load. Your {operation} request may take longer than usual.",
        }
        admin_messages = {
            NETWORK: f"Network error during {operation} affecting {record_count} records. Check API connectivity and rate limits.",
            DATA: f"Data integrity error in {operation} for {record_count} records. Manual review required for affected data.",
            VALIDATION: f"Validation failures during {operation} for {record_count} records. Review source data and field mappings.",
            PERFORMANCE: f"Performance degradation during {operation} processing {record_count} records. Consider reducing batch size.",
        }
        user_actions = {
            NETWORK: ["Wait a few minutes and try again", "Check your internet connection"],
            DATA: ["Contact support with details of what you were trying to import"],
            PERFORMANCE: ["Try again during off-peak hours", "Reduce the amount of data being processed"],
        }

        technical = (
            f"Category: {classification.category}\n"
            f"Subcategory: {classification.subcategory}\n"
            f"Severity: {classification.severity}\n"
            f"Fingerprint: {classification.error_fingerprint}\n"
            f"Error type: {classification.error_type}\n"
            f"Details: {context.get('error_details', classification.message or 'No details available')}"
        )

        return {
            "user_message": user_messages.get(
                category,
                f"We're experiencing a temporary issue with the {operation} operation. Please try again later.",
            ),
            "admin_message": admin_messages.get(
                category,
                f"System error during {operation} affecting {record_count} records. Check system logs for details.",
            ),
            "technical_message": technical,
            "monitoring_message": {
                "alert_type": "sync_error",
                "severity": classification.severity,
                "category": classification.category,
                "subcategory": classification.subcategory,
                "operation": operation,
                "fingerprint": classification.error_fingerprint,
                "requires_immediate_attention": classification.requires_immediate_attention,
                "affected_records": record_count,
                "timestamp": classification.classified_at.isoformat(),
            },
            "user_actions": user_actions.get(category, ["Try again later", "Contact support if the problem persists"]),
            "admin_actions": list(classification.recovery_actions),
            "technical_actions": [
                "Analyze error frequency and patterns",
                "Review code path that generated the error",
                "Check for recent changes that might have introduced the issue",
            ],
        }


def _normalize_history_entry(entry: Any) -> Dict[str, Any]:
    if isinstance(entry, ErrorClassification):
        return {
            "category": entry.category,
            "operation": entry.operation,
            "occurred_at": entry.classified_at,
        }
    return {
        "category": entry.get("category", APPLICATION),
        "operation": entry.get("operation"),
        "occurred_at": entry.get("occurred_at") or entry.get("classified_at"),
    }


def _pattern_recommendations(high_frequency, problematic, by_category) -> List[str]:
    recommendations = []
    if high_frequency:
        recommendations.append("Implement targeted error handling for high-frequency error categories")
    if problematic:
        recommendations.append("Review and optimize problematic operations for better error resilience")
        for item in problematic:
            op = item["operation"]
            if by_category.get(NETWORK):
                recommendations.append(f"Add caching or request throttling for repeated failures in {op}")
            else:
                recommendations.append(f"Investigate repeated failures in {op}")
    return recommendations or ["Continue monitoring error patterns for trends"]


def _infrastructure_improvements(by_category) -> List[str]:
    improvements = []
    if by_category.get(NETWORK, 0) > 5:
        improvements.append("Implement robust network resilience patterns (circuit breakers, retries)")
    if by_category.get(DATA, 0) > 3:
        improvements.append("Add comprehensive data validation and quality checks")
    if by_category.get(PERFORMANCE, 0) > 3:
        improvements.append("Optimize system performance and resource management")
    return improvements or ["Current infrastructure appears stable"]


def _monitoring_enhancements(peak_hours, bursts) -> List[str]:
    if bursts:
        hours = ", ".join(str(h) for h in peak_hours)
        return [
            f"Set up alerts for error spikes during peak hours ({hours})",
            "Implement proactive monitoring for error burst patterns",
        ]
    return ["Current monitoring appears adequate", "Continue tracking temporal error patterns"]
