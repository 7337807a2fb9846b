"""Tests for error classification, pattern analysis and message rendering."""
from datetime import datetime, timedelta, timezone

import pytest
import requests
from sqlalchemy.exc import IntegrityError, OperationalError

from datasync.errors import (
    ApplicationError,
    CircuitOpenError,
    ConstraintError,
    NetworkError,
    PerformanceError,
    RateLimitedError,
    RecordValidationError,
    RetryExhaustedError,
)
from datasync.sync.error_classifier import (
    APPLICATION,
    CRITICAL,
    DATA,
    LOW,
    MEDIUM,
    NETWORK,
    PERFORMANCE,
    VALIDATION,
    ErrorClassifier,
    fingerprint,
)


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


class TestDecisionTable:
    def test_network_timeout(self, classifier):
        c = classifier.classify(NetworkError("timeout"))
        assert (c.category, c.subcategory, c.severity) == (NETWORK, "source_timeout", MEDIUM)
        assert c.recoverable and c.retry_eligible
        assert c.retry_strategy.max_attempts == 5
        assert c.retry_strategy.jitter is True
        assert c.notification_channels == frozenset({"slack"})

    def test_network_other_reason(self, classifier):
        c = classifier.classify(NetworkError("connection_refused"))
        assert c.subcategory == "source_unreachable"
        assert c.retry_eligible

    def test_rate_limited_is_retryable_network(self, classifier):
        c = classifier.classify(RateLimitedError("airtable", 500))
        assert (c.category, c.subcategory) == (NETWORK, "rate_limited")
        assert c.retry_eligible

    def test_circuit_open_not_retryable(self, classifier):
        c = classifier.classify(CircuitOpenError("db"))
        assert c.subcategory == "circuit_open"
        assert not c.retry_eligible
        assert c.retry_strategy is None

    def test_constraint_is_critical_data(self, classifier):
        c = classifier.classify(ConstraintError("unique_violation"))
        assert (c.category, c.subcategory, c.severity) == (DATA, "unique_violation", CRITICAL)
        assert not c.recoverable and not c.retry_eligible
        assert c.notification_channels == frozenset({"email", "slack", "pager"})
        assert c.requires_immediate_attention
        assert c.escalation_level == "immediate"

    def test_validation(self, classifier):
        c = classifier.classify(RecordValidationError([{"field": "name", "message": "required"}]))
        assert (c.category, c.subcategory, c.severity) == (VALIDATION, "invalid_source_data", MEDIUM)
        assert c.recoverable
        assert not c.retry_eligible

    def test_performance_uses_linear_policy(self, classifier):
        c = classifier.classify(PerformanceError("pool exhausted"))
        assert c.category == PERFORMANCE
        assert c.retry_eligible
        assert c.retry_strategy.strategy == "linear_backoff"
        assert c.retry_strategy.base_delay_ms == 5000

    def test_unknown_is_low_application(self, classifier):
        c = classifier.classify(KeyError("x"))
        assert (c.category, c.subcategory, c.severity) == (APPLICATION, "unknown_error", LOW)
        assert not c.retry_eligible
        assert c.notification_channels == frozenset({"log_only"})
        assert c.escalation_level == "none"

    def test_exhausted_classified_by_last_error_without_retry(self, classifier):
        c = classifier.classify(RetryExhaustedError(5, NetworkError("timeout")))
        assert c.category == NETWORK
        assert not c.retry_eligible
        assert c.retry_strategy is None

    def test_consecutive_failures_disable_retry(self, classifier):
        c = classifier.classify(NetworkError("timeout"), {"consecutive_failures": 5})
        assert not c.retry_eligible
        c = classifier.classify(NetworkError("timeout"), {"consecutive_failures": 4})
        assert c.retry_eligible

    def test_recovery_and_prevention_lists(self, classifier):
        c = classifier.classify(PerformanceError())
        assert "Reduce batch size to decrease load" in c.recovery_actions
        assert c.prevention_measures


class TestLibraryErrors:
    def test_requests_timeout(self, classifier):
        assert classifier.classify(requests.Timeout("slow")).subcategory == "source_timeout"

    def test_requests_connection_error(self, classifier):
        assert classifier.classify(requests.ConnectionError("down")).subcategory == "source_unreachable"

    def test_builtin_timeout(self, classifier):
        assert classifier.classify(TimeoutError()).category == NETWORK

    def test_integrity_error_unique(self, classifier):
        exc = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: cases.regulator_id"))
        c = classifier.classify(exc)
        assert (c.category, c.subcategory) == (DATA, "unique_violation")

    def test_integrity_error_not_null(self, classifier):
        exc = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: cases.offender_name"))
        assert classifier.classify(exc).subcategory == "not_null_violation"

    def test_operational_lock_is_performance(self, classifier):
        exc = OperationalError("UPDATE", {}, Exception("database is locked"))
        assert classifier.classify(exc).category == PERFORMANCE

    def test_operational_other_is_application(self, classifier):
        exc = OperationalError("SELECT", {}, Exception("no such table: cases"))
        c = classifier.classify(exc)
        assert c.category == APPLICATION
        assert c.error_type == ApplicationError.__name__


class TestFingerprint:
    def test_stable_and_short(self):
        fp = fingerprint(NETWORK, "source_timeout", "NetworkError", "sync:cases", "cases")
        assert fp == fingerprint(NETWORK, "source_timeout", "NetworkError", "sync:cases", "cases")
        assert len(fp) == 16
        int(fp, 16)

    def test_ignores_message_and_time(self, classifier):
        ctx = {"operation": "sync:cases", "resource_type": "cases"}
        a = classifier.classify(NetworkError("timeout", "first"), ctx)
        b = classifier.classify(NetworkError("timeout", "second"), ctx)
        assert a.error_fingerprint == b.error_fingerprint

    def test_differs_by_operation(self, classifier):
        a = classifier.classify(NetworkError(), {"operation": "sync:cases"})
        b = classifier.classify(NetworkError(), {"operation": "sync:notices"})
        assert a.error_fingerprint != b.error_fingerprint

    def test_differs_by_error_kind(self, classifier):
        ctx = {"operation": "sync:cases", "resource_type": "cases"}
        network = classifier.classify(NetworkError("timeout"), ctx)
        constraint = classifier.classify(ConstraintError("unique_violation"), ctx)
        assert network.error_fingerprint != constraint.error_fingerprint


class TestPatternAnalysis:
    def test_empty_history(self, classifier):
        result = classifier.analyze_error_patterns([])
        assert result["total_errors"] == 0
        assert result["recommended_actions"] == ["Continue monitoring error patterns for trends"]
        assert result["infrastructure_improvements"] == ["Current infrastructure appears stable"]

    def test_high_frequency_and_problematic(self, classifier):
        base = datetime(2024, 5, 1, 14, 5, tzinfo=timezone.utc)
        history = [
            {"category": NETWORK, "operation": "sync:cases", "occurred_at": base + timedelta(minutes=i)}
            for i in range(3)
        ] + [{"category": DATA, "operation": "sync:notices", "occurred_at": base + timedelta(hours=2)}]

        result = classifier.analyze_error_patterns(history)
        assert result["by_category"] == {NETWORK: 3, DATA: 1}
        assert result["high_frequency_errors"] == [NETWORK]
        assert result["problematic_operations"] == [{"operation": "sync:cases", "error_count": 3}]
        assert result["temporal_patterns"]["error_bursts"] == [
            {"hour": "2024-05-01T14:00:00+00:00", "error_count": 3}
        ]
        assert result["temporal_patterns"]["peak_hours"][0] == 14
        assert any("sync:cases" in r for r in result["recommended_actions"])
        assert result["monitoring_enhancements"][0].startswith("Set up alerts for error spikes")

    def test_accepts_classifications(self, classifier):
        history = [classifier.classify(PerformanceError(), {"operation": "op"}) for _ in range(4)]
        result = classifier.analyze_error_patterns(history)
        assert result["by_category"] == {PERFORMANCE: 4}
        assert "Optimize system performance and resource management" in result["infrastructure_improvements"]


class TestContextualMessages:
    def test_network_messages(self, classifier):
        c = classifier.classify(NetworkError(), {"operation": "import_cases"})
        messages = classifier.generate_contextual_messages(c, {"record_count": 12})
        assert "import_cases" in messages["user_message"]
        assert "12 records" in messages["admin_message"]
        assert c.error_fingerprint in messages["technical_message"]
        assert messages["monitoring_message"]["alert_type"] == "sync_error"
        assert messages["monitoring_message"]["affected_records"] == 12
        assert messages["admin_actions"] == c.recovery_actions

    def test_application_fallback_messages(self, classifier):
        c = classifier.classify(RuntimeError("bug"))
        messages = classifier.generate_contextual_messages(c)
        assert "temporary issue" in messages["user_message"]
        assert messages["user_actions"] == ["Try again later", "Contact support if the problem persists"]
