"""
IntegrityVerifier — audits consistency between a source and its target.

Modes:
  count_only  compare record counts per resource type
  sample      draw sample_size target records and look each up in the source
  full        compare every record both ways, field by field

Source records are mapped through the same TargetProcessor field mapping
the sync uses, so "expected" values are what a sync would have written.

Reconciliation replays missing and mismatched records through the target
processor's create/update path. Records present only in the target are
never deleted; they stay in the unresolved list.
"""
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from datasync.adapters.base import SourceAdapter
from datasync.errors import (
    SyncError,
    UnknownResourceTypeError,
    UnknownVerificationModeError,
    as_sync_error,
)
from datasync.sync.config import TargetConfig
from datasync.sync.events import EventBroadcaster
from datasync.sync.registry import SyncRegistry
from datasync.sync.target_processor import (
    CREATED,
    ERROR,
    ProcessorState,
    TargetProcessor,
    map_record_fields,
)

logger = logging.getLogger(__name__)

COUNT_ONLY = "count_only"
SAMPLE = "sample"
FULL = "full"
MODES = (COUNT_ONLY, SAMPLE, FULL)

DEFAULT_SAMPLE_SIZE = 100
ACCURACY_RECOMMENDATION_THRESHOLD = 0.95
TREND_HISTORY_LIMIT = 500

STATUS_TIERS = (
    (98.0, "excellent"),
    (95.0, "good"),
    (90.0, "acceptable"),
    (80.0, "concerning"),
)


@dataclass
class IntegrityBinding:
    """Pairs one resource type's source with its target."""

    resource_type: str
    source_adapter: Union[str, SourceAdapter]
    source_config: Dict[str, Any]
    target_resource: str
    target_config: TargetConfig


@dataclass
class IntegrityReport:
    verification_summary: Dict[str, Any]
    detailed_results: Dict[str, Dict[str, Any]]
    count_discrepancies: List[Dict[str, Any]]
    missing_records: List[Dict[str, Any]]
    field_mismatches: List[Dict[str, Any]]
    integrity_score: float
    recommendations: List[str]
    metadata: Dict[str, Any]

    @property
    def overall_status(self) -> str:
        return self.verification_summary["overall_status"]


@dataclass
class ReconciliationSummary:
    total_issues: int
    resolved_issues: int
    resolution_rate: float
    dry_run: bool
    plan: List[Dict[str, Any]] = field(default_factory=list)
    unresolved: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Dict[str, int]] = field(default_factory=dict)
    reconciled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def status_for_score(score: float) -> str:
    for floor, status in STATUS_TIERS:
        if score >= floor:
            return status
    return "critical"


def count_accuracy(target_count: int, source_count: int) -> float:
    if source_count == 0:
        return 1.0 if target_count == 0 else 0.0
    return min(target_count, source_count) / max(target_count, source_count)


def _same(expected: Any, actual: Any) -> bool:
    if expected == actual:
        return True
    if expected is None or actual is None:
        return False
    return str(expected) == str(actual)


class MonitoringHandle:
    """Background count_only checks for one sync session."""

    def __init__(
        self,
        verifier: "IntegrityVerifier",
        session_id: str,
        *,
        check_interval_seconds: float,
        alert_threshold_percentage: float,
        auto_correction: bool,
    ):
        self.verifier = verifier
        self.session_id = session_id
        self.check_interval_seconds = check_interval_seconds
        self.alert_threshold_percentage = alert_threshold_percentage
        self.auto_correction = auto_correction
        self.alerts: List[Dict[str, Any]] = []
        self.checks = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def run_check(self) -> List[Dict[str, Any]]:
        """One monitoring pass; returns the alerts it raised."""
        report = await self.verifier.verify_data_integrity(COUNT_ONLY, {"session_id": self.session_id})
        self.checks += 1
        floor = 1.0 - self.alert_threshold_percentage / 100.0
        new_alerts = []
        for resource_type, result in report.detailed_results.items():
            if result["count_accuracy"] < floor:
                new_alerts.append(
                    {
                        "type": "count_discrepancy",
                        "resource_type": resource_type,
                        "accuracy": result["count_accuracy"],
                        "threshold": self.alert_threshold_percentage,
                        "severity": "high",
                        "detected_at": datetime.now(timezone.utc).isoformat(),
                    }
                )

        if new_alerts:
            logger.warning("Integrity monitoring for %s: %d alerts", self.session_id, len(new_alerts))
            self.alerts.extend(new_alerts)
            await self.verifier._publish(self.session_id, "integrity_monitoring_alert", {"alerts": new_alerts})
            if self.auto_correction:
                resource_types = [a["resource_type"] for a in new_alerts]
                full = await self.verifier.verify_data_integrity(FULL, {"resource_types": resource_types})
                await self.verifier.reconcile_integrity_issues(full)
        return new_alerts

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_check()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Integrity monitoring check for %s failed: %s", self.session_id, exc)
                await self.verifier._publish(self.session_id, "integrity_monitoring_error", {"error": str(exc)})
            await self.verifier._sleep(self.check_interval_seconds)

    def start(self) -> "MonitoringHandle":
        self.task = asyncio.create_task(self._loop(), name=f"integrity:{self.session_id}")
        return self

    async def stop(self) -> None:
        if self.task is None:
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        logger.debug("Integrity monitoring for %s stopped after %d checks", self.session_id, self.checks)


class IntegrityVerifier:
    def __init__(
        self,
        registry: SyncRegistry,
        bindings: Sequence[IntegrityBinding],
        *,
        broadcaster: Optional[EventBroadcaster] = None,
        sleep=asyncio.sleep,
    ):
        self.registry = registry
        self.processor = TargetProcessor(registry)
        self.bindings: Dict[str, IntegrityBinding] = {b.resource_type: b for b in bindings}
        self.broadcaster = broadcaster
        self._sleep = sleep
        self.history: List[Dict[str, Any]] = []

    # ─── Verification ─────────────────────────────────────────────────────────

    async def verify_data_integrity(
        self,
        mode: str = FULL,
        options: Optional[Mapping[str, Any]] = None,
    ) -> IntegrityReport:
        """
        Compare source and target for the selected resource types.

        Options:
            resource_types: list of binding names (default: all). An empty
                list yields an empty report with score 100.
            sample_size: records drawn in sample mode (default 100).
            session_id: publish start/finish events for this session.

        Raises:
            UnknownVerificationModeError: mode is not count_only, sample or full.
            UnknownResourceTypeError: a resource type has no binding.
        """
        if mode not in MODES:
            raise UnknownVerificationModeError(mode)
        options = dict(options or {})
        resource_types = options.get("resource_types")
        if resource_types is None:
            resource_types = list(self.bindings)
        for rt in resource_types:
            if rt not in self.bindings:
                raise UnknownResourceTypeError(rt)

        session_id = options.get("session_id")
        started = time.monotonic()
        logger.info("Integrity verification (%s) for %s", mode, ", ".join(resource_types) or "no resources")
        if session_id:
            await self._publish(session_id, "integrity_verification_started", {"verification_type": mode})

        results: Dict[str, Dict[str, Any]] = {}
        for rt in resource_types:
            binding = self.bindings[rt]
            if mode == COUNT_ONLY:
                results[rt] = await self._verify_counts(binding)
            elif mode == SAMPLE:
                results[rt] = await self._verify_sample(binding, int(options.get("sample_size", DEFAULT_SAMPLE_SIZE)))
            else:
                results[rt] = await self._verify_full(binding)

        report = self._build_report(mode, results, options, time.monotonic() - started)
        self._remember(report)
        logger.info(
            "Integrity verification (%s) finished: score %.2f (%s)",
            mode,
            report.integrity_score,
            report.overall_status,
        )
        if session_id:
            await self._publish(
                session_id,
                "integrity_verification_completed",
                {"verification_type": mode, "integrity_score": report.integrity_score},
            )
        return report

    async def _source_index(self, binding: IntegrityBinding, state: ProcessorState):
        """Stream the source once; return (key -> (raw, mapped attrs), count, unmappable)."""
        adapter = self.registry.resolve_adapter(binding.source_adapter)
        adapter_state = await adapter.initialize(binding.source_config)
        index: Dict[Any, Any] = {}
        total = 0
        unmappable = 0
        async for raw in adapter.stream_records(adapter_state):
            total += 1
            try:
                attrs = map_record_fields(raw, state.config)
            except SyncError:
                unmappable += 1
                continue
            key = attrs.get(state.config.unique_field)
            if key is None:
                unmappable += 1
                continue
            index[key] = (raw, attrs)
        return index, total, unmappable

    async def _source_count(self, binding: IntegrityBinding) -> int:
        adapter = self.registry.resolve_adapter(binding.source_adapter)
        adapter_state = await adapter.initialize(binding.source_config)
        count = await adapter.get_total_count(adapter_state)
        if count is None:
            count = 0
            async for _ in adapter.stream_records(adapter_state):
                count += 1
        return count

    def _state(self, binding: IntegrityBinding) -> ProcessorState:
        return self.processor.initialize(binding.target_resource, binding.target_config)

    async def _verify_counts(self, binding: IntegrityBinding) -> Dict[str, Any]:
        state = self._state(binding)
        target_count = await state.resource.count()
        source_count = await self._source_count(binding)
        accuracy = count_accuracy(target_count, source_count)
        return {
            "target_count": target_count,
            "source_count": source_count,
            "count_discrepancy": target_count - source_count,
            "count_accuracy": round(accuracy, 4),
            "compared": 1,
            "consistent": accuracy,
        }

    def _compare(self, state: ProcessorState, resource_type: str, record: Any, expected: Mapping[str, Any]):
        actual = state.resource.to_dict(record)
        key = actual.get(state.config.unique_field)
        return [
            {
                "resource_type": resource_type,
                "record_id": key,
                "field": name,
                "expected": value,
                "actual": actual.get(name),
            }
            for name, value in expected.items()
            if not _same(value, actual.get(name))
        ]

    async def _verify_sample(self, binding: IntegrityBinding, sample_size: int) -> Dict[str, Any]:
        state = self._state(binding)
        index, source_count, unmappable = await self._source_index(binding, state)
        target_count = await state.resource.count()
        sample = await state.resource.sample(sample_size)

        missing, mismatches = [], []
        consistent = 0
        for record in sample:
            key = getattr(record, state.config.unique_field)
            entry = index.get(key)
            if entry is None:
                missing.append({"resource_type": binding.resource_type, "record_id": key, "missing_in": "source"})
                continue
            diffs = self._compare(state, binding.resource_type, record, entry[1])
            if diffs:
                mismatches.extend(diffs)
            else:
                consistent += 1

        sampled = len(sample)
        return {
            "target_count": target_count,
            "source_count": source_count,
            "count_discrepancy": target_count - source_count,
            "count_accuracy": round(count_accuracy(target_count, source_count), 4),
            "sample_size": sampled,
            "match_rate": round(consistent / sampled, 4) if sampled else 1.0,
            "compared": sampled,
            "consistent": consistent,
            "unmappable_source_records": unmappable,
            "missing_records": missing,
            "field_mismatches": mismatches,
        }

    async def _verify_full(self, binding: IntegrityBinding) -> Dict[str, Any]:
        state = self._state(binding)
        index, source_count, unmappable = await self._source_index(binding, state)
        records = await state.resource.list_all()
        target_by_key = {getattr(r, state.config.unique_field): r for r in records}

        missing, mismatches = [], []
        consistent = 0
        for key, (raw, attrs) in index.items():
            record = target_by_key.get(key)
            if record is None:
                missing.append({
                    "resource_type": binding.resource_type,
                    "record_id": key,
                    "source_id": raw.get("id"),
                    "missing_in": "target",
                })
                continue
            diffs = self._compare(state, binding.resource_type, record, attrs)
            if diffs:
                mismatches.extend(diffs)
            else:
                consistent += 1
        for key in target_by_key:
            if key not in index:
                missing.append({"resource_type": binding.resource_type, "record_id": key, "missing_in": "source"})

        compared = len(set(index) | set(target_by_key))
        return {
            "target_count": len(records),
            "source_count": source_count,
            "count_discrepancy": len(records) - source_count,
            "count_accuracy": round(count_accuracy(len(records), source_count), 4),
            "compared": compared,
            "consistent": consistent,
            "unmappable_source_records": unmappable,
            "missing_records": missing,
            "field_mismatches": mismatches,
        }

    def _build_report(self, mode, results, options, duration_seconds) -> IntegrityReport:
        if mode == COUNT_ONLY:
            accuracies = [r["count_accuracy"] for r in results.values()]
            accuracy = sum(accuracies) / len(accuracies) if accuracies else 1.0
        else:
            compared = sum(r["compared"] for r in results.values())
            consistent = sum(r["consistent"] for r in results.values())
            accuracy = consistent / compared if compared else 1.0
        score = round(min(max(accuracy * 100.0, 0.0), 100.0), 2)

        discrepancies = [
            {
                "resource_type": rt,
                "target_count": r["target_count"],
                "source_count": r["source_count"],
                "delta": r["count_discrepancy"],
            }
            for rt, r in results.items()
            if r["count_discrepancy"] != 0
        ]
        missing = [m for r in results.values() for m in r.get("missing_records", [])]
        mismatches = [m for r in results.values() for m in r.get("field_mismatches", [])]

        return IntegrityReport(
            verification_summary={
                "verification_type": mode,
                "resources_checked": len(results),
                "overall_accuracy": round(accuracy, 4),
                "overall_status": status_for_score(score),
                "duration_seconds": round(duration_seconds, 3),
            },
            detailed_results=results,
            count_discrepancies=discrepancies,
            missing_records=missing,
            field_mismatches=mismatches,
            integrity_score=score,
            recommendations=_recommendations(accuracy, discrepancies, missing, mismatches),
            metadata={
                "generated_at": datetime.now(timezone.utc),
                "options_used": {k: v for k, v in options.items() if k != "session_id"},
            },
        )

    def _remember(self, report: IntegrityReport) -> None:
        self.history.append({
            "generated_at": report.metadata["generated_at"],
            "verification_type": report.verification_summary["verification_type"],
            "integrity_score": report.integrity_score,
            "overall_accuracy": report.verification_summary["overall_accuracy"],
            "overall_status": report.overall_status,
            "resources": {
                rt: {
                    "count_accuracy": r["count_accuracy"],
                    "missing": len(r.get("missing_records", [])),
                    "mismatches": len(r.get("field_mismatches", [])),
                }
                for rt, r in report.detailed_results.items()
            },
        })
        del self.history[:-TREND_HISTORY_LIMIT]

    # ─── Monitoring ───────────────────────────────────────────────────────────

    def monitor_sync_integrity(
        self,
        session_id: str,
        check_interval_seconds: float = 30,
        alert_threshold_percentage: float = 5.0,
        auto_correction: bool = False,
    ) -> MonitoringHandle:
        """Start recurring count_only checks; call handle.stop() to end them."""
        handle = MonitoringHandle(
            self,
            session_id,
            check_interval_seconds=check_interval_seconds,
            alert_threshold_percentage=alert_threshold_percentage,
            auto_correction=auto_correction,
        )
        logger.info("Integrity monitoring started for %s every %ss", session_id, check_interval_seconds)
        return handle.start()

    # ─── Reconciliation ───────────────────────────────────────────────────────

    async def reconcile_integrity_issues(
        self,
        report: IntegrityReport,
        *,
        dry_run: bool = False,
        actor: Any = None,
    ) -> ReconciliationSummary:
        """
        Fix what a report found, or just plan it with dry_run=True.

        missing in target  -> create from source
        field mismatch     -> update from source (one write per record)
        missing in source  -> left unresolved (no deletes)
        count discrepancy  -> resolved when counts agree after the fixes
        """
        issues: List[Dict[str, Any]] = []
        issues += [{"issue_type": "count_discrepancy", **d} for d in report.count_discrepancies]
        issues += [{"issue_type": "missing_record", **m} for m in report.missing_records]
        issues += [{"issue_type": "field_mismatch", **m} for m in report.field_mismatches]

        plan = [dict(issue, action=_planned_action(issue)) for issue in issues]
        details = {
            kind: {"attempted": 0, "resolved": 0, "failed": 0}
            for kind in ("count_discrepancy", "missing_record", "field_mismatch")
        }
        for issue in issues:
            details[issue["issue_type"]]["attempted"] += 1

        if dry_run or not issues:
            for d in details.values():
                d["failed"] = 0 if dry_run else d["attempted"]
            summary = ReconciliationSummary(
                total_issues=len(issues),
                resolved_issues=0,
                resolution_rate=1.0 if not issues else 0.0,
                dry_run=dry_run,
                plan=plan,
                unresolved=list(issues),
                details=details,
            )
            logger.info("Reconciliation plan: %d issues (dry_run=%s)", len(issues), dry_run)
            return summary

        resolved_keys = set()
        resolved: List[Dict[str, Any]] = []
        unresolved: List[Dict[str, Any]] = []
        sources: Dict[str, Any] = {}

        for issue in issues:
            kind = issue["issue_type"]
            if kind == "count_discrepancy":
                continue
            rt = issue["resource_type"]
            key = (rt, issue["record_id"])
            if _planned_action(issue) == "flag":
                unresolved.append(issue)
                continue
            if key in resolved_keys:
                resolved.append(issue)
                continue
            binding = self.bindings.get(rt)
            if binding is None:
                unresolved.append(issue)
                continue
            if rt not in sources:
                state = self._state(binding)
                index, _, _ = await self._source_index(binding, state)
                sources[rt] = (state, index)
            state, index = sources[rt]
            entry = index.get(issue["record_id"])
            if entry is None:
                unresolved.append(issue)
                continue
            config = state.config.model_copy(update={"duplicate_strategy": "update"})
            try:
                result = await self.processor.process_record(state, entry[0], config, actor)
            except Exception as exc:
                logger.warning("Reconciliation of %s %s failed: %s", rt, issue["record_id"], as_sync_error(exc))
                unresolved.append(issue)
                continue
            if result.outcome == ERROR:
                unresolved.append(issue)
                continue
            if result.outcome == CREATED:
                logger.debug("Reconciled missing %s %s", rt, issue["record_id"])
            resolved_keys.add(key)
            resolved.append(issue)

        for issue in issues:
            if issue["issue_type"] != "count_discrepancy":
                continue
            binding = self.bindings.get(issue["resource_type"])
            if binding is None:
                unresolved.append(issue)
                continue
            recount = await self._verify_counts(binding)
            if recount["count_discrepancy"] == 0:
                resolved.append(issue)
            else:
                unresolved.append(issue)

        for issue in resolved:
            details[issue["issue_type"]]["resolved"] += 1
        for issue in unresolved:
            details[issue["issue_type"]]["failed"] += 1

        summary = ReconciliationSummary(
            total_issues=len(issues),
            resolved_issues=len(resolved),
            resolution_rate=round(len(resolved) / len(issues), 4),
            dry_run=False,
            plan=plan,
            unresolved=unresolved,
            details=details,
        )
        logger.info("Reconciliation finished: %d/%d issues resolved", len(resolved), len(issues))
        return summary

    # ─── Trends ───────────────────────────────────────────────────────────────

    def analyze_integrity_trends(self, window_hours: int = 168) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        start = now - timedelta(hours=window_hours)
        runs = [h for h in self.history if h["generated_at"] >= start]

        per_resource: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for run in runs:
            for rt, data in run["resources"].items():
                per_resource[rt].append(data)

        problematic = []
        for rt, items in per_resource.items():
            avg = sum(i["count_accuracy"] for i in items) / len(items)
            issues = sum(i["missing"] + i["mismatches"] for i in items)
            if avg < 1.0 or issues:
                problematic.append({
                    "resource_type": rt,
                    "average_count_accuracy": round(avg, 4),
                    "total_issues": issues,
                })
        problematic.sort(key=lambda p: (p["average_count_accuracy"], -p["total_issues"]))

        if runs:
            consistency = sum(r["overall_accuracy"] for r in runs) / len(runs)
            reliability = sum(1 for r in runs if r["overall_status"] in ("excellent", "good")) / len(runs)
        else:
            consistency = reliability = 1.0

        recommendations = []
        if not runs:
            recommendations.append("No integrity verification runs in this window; schedule regular checks")
        if consistency < ACCURACY_RECOMMENDATION_THRESHOLD:
            recommendations.append("Consider investigating data sync processes for accuracy improvements")
        for p in problematic[:3]:
            recommendations.append(f"Review sync configuration for {p['resource_type']}")
        if not recommendations:
            recommendations.append("Data integrity appears to be in good condition")

        return {
            "time_window": {"start_time": start, "end_time": now, "duration_hours": window_hours},
            "verification_runs": len(runs),
            "integrity_score_over_time": [
                {"generated_at": r["generated_at"], "verification_type": r["verification_type"],
                 "integrity_score": r["integrity_score"]}
                for r in runs
            ],
            "count_accuracy_trends": {
                rt: [i["count_accuracy"] for i in items] for rt, items in per_resource.items()
            },
            "most_problematic_resources": problematic[:3],
            "system_health_indicators": {
                "data_consistency": round(consistency, 4),
                "sync_reliability": round(reliability, 4),
            },
            "alert_triggers": [
                {"generated_at": r["generated_at"], "integrity_score": r["integrity_score"]}
                for r in runs
                if r["integrity_score"] < ACCURACY_RECOMMENDATION_THRESHOLD * 100
            ],
            "improvement_recommendations": recommendations,
        }

    async def _publish(self, session_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.broadcast_session_event(session_id, event_type, payload)


def _planned_action(issue: Mapping[str, Any]) -> str:
    kind = issue["issue_type"]
    if kind == "count_discrepancy":
        return "recount"
    if kind == "field_mismatch":
        return "update_from_source"
    if issue.get("missing_in") == "target":
        return "create_from_source"
    return "flag"


def _recommendations(accuracy, discrepancies, missing, mismatches) -> List[str]:
    recommendations = []
    if accuracy < ACCURACY_RECOMMENDATION_THRESHOLD:
        recommendations.append("Consider investigating data sync processes for accuracy improvements")
    for d in discrepancies:
        recommendations.append(
            f"{d['resource_type']}: target has {d['target_count']} records, source has {d['source_count']}"
        )
    missing_in_target = sum(1 for m in missing if m.get("missing_in") == "target")
    if missing_in_target:
        recommendations.append(f"Re-run sync to import {missing_in_target} records missing from the target")
    if mismatches:
        recommendations.append(f"Reconcile {len(mismatches)} field mismatches from the source")
    return recommendations or ["Data integrity appears to be in good condition"]
