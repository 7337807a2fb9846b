"""
RetryEngine — runs a unit of work under a backoff policy.

Flow for one execute_with_retry call:
  1. Resolve the policy (explicit object, named default, or api_operations)
  2. For attempt 1..max_attempts: check cancellation, run the work through
     the optional rate limiter and circuit breaker
  3. On failure ask the retry predicate; ineligible errors propagate at once
  4. Otherwise sleep the attempt's backoff delay and try again
  5. After the last attempt raise RetryExhaustedError(max_attempts)

Sleeping uses asyncio.sleep so a backing-off operation never blocks other
sync runs on the same loop. Circuit and limiter state live in registries
owned by this engine instance.
"""
import asyncio
import inspect
import logging
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Union

from datasync.errors import CircuitOpenError, RetryExhaustedError, SyncCancelledError
from datasync.retry.backoff import delays_for
from datasync.retry.circuit_breaker import OPEN, CircuitBreakerRegistry, Work, run_work
from datasync.retry.policies import RetryPolicy, resolve_policy
from datasync.retry.rate_limiter import RateLimiterRegistry
from datasync.sync.error_classifier import ErrorClassifier

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Union[Awaitable[None], None]]

# Batches below this success rate trip the operation's circuit.
BATCH_HEALTH_THRESHOLD = 0.5
HISTORY_LIMIT = 10_000


@dataclass
class RetryContext:
    retry_policy: Union[RetryPolicy, str, None] = None
    circuit_breaker: Optional[bool] = None  # None: use the policy's flag
    rate_limiter: Optional[str] = None
    retry_when: Optional[Callable[[BaseException], bool]] = None
    session_id: Optional[str] = None
    resource_type: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None


@dataclass
class OperationRecord:
    operation_id: str
    strategy: str
    attempts: int
    success: bool
    duration_ms: int
    error_category: Optional[str] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BatchRetryResult:
    total: int
    successful: int
    failed: int
    success_rate: float
    results: List[Any] = field(default_factory=list)


class RetryEngine:
    def __init__(
        self,
        circuit_breakers: Optional[CircuitBreakerRegistry] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        classifier: Optional[ErrorClassifier] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.circuit_breakers = circuit_breakers or CircuitBreakerRegistry()
        self.rate_limiters = rate_limiters or RateLimiterRegistry()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._clock = clock
        self._history: Deque[OperationRecord] = deque(maxlen=HISTORY_LIMIT)

    async def execute_with_retry(
        self,
        operation_id: str,
        work: Work,
        context: Optional[RetryContext] = None,
    ) -> Any:
        """
        Run work until it succeeds or the policy gives up.

        Args:
            operation_id: Names the operation in analytics; also the circuit
                breaker key when the breaker is enabled.
            work: Zero-argument callable returning a value or an awaitable.
            context: Policy, gating and cancellation options.

        Returns:
            Whatever work returned on the successful attempt.

        Raises:
            RetryExhaustedError: every attempt failed with a retryable error.
            CircuitOpenError: the breaker declined the call (never retried).
            SyncCancelledError: cancel_event was set at an attempt boundary.
            Any non-retryable exception raised by work, unchanged.
        """
        ctx = context or RetryContext()
        policy = resolve_policy(ctx.retry_policy)
        use_breaker = policy.circuit_breaker if ctx.circuit_breaker is None else ctx.circuit_breaker
        should_retry = ctx.retry_when or self.classifier.retry_eligible
        max_attempts = max(policy.max_attempts, 1)
        delays = delays_for(policy.with_overrides(max_attempts=max_attempts))
        started = self._clock()
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            if ctx.cancel_event is not None and ctx.cancel_event.is_set():
                raise SyncCancelledError(ctx.session_id)

            try:
                result = await self._attempt(operation_id, work, ctx, use_breaker)
            except (CircuitOpenError, SyncCancelledError) as exc:
                self._record(operation_id, policy, attempt, started, error=exc)
                raise
            except Exception as exc:
                last_error = exc
                if not should_retry(exc):
                    self._record(operation_id, policy, attempt, started, error=exc)
                    raise
                if attempt < max_attempts:
                    delay_ms = delays[attempt - 1]
                    logger.warning(
                        "%s attempt %d/%d failed (%s); retrying in %.0fms",
                        operation_id,
                        attempt,
                        max_attempts,
                        exc,
                        delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)
                continue

            self._record(operation_id, policy, attempt, started)
            if attempt > 1:
                logger.info("%s succeeded on attempt %d", operation_id, attempt)
            return result

        self._record(operation_id, policy, max_attempts, started, error=last_error)
        logger.error("%s exhausted %d attempts: %s", operation_id, max_attempts, last_error)
        raise RetryExhaustedError(max_attempts, last_error) from last_error

    async def _attempt(self, operation_id: str, work: Work, ctx: RetryContext, use_breaker: bool) -> Any:
        async def gated():
            if use_breaker:
                return await self.circuit_breakers.call(operation_id, work)
            return await run_work(work)

        if ctx.rate_limiter:
            return await self.rate_limiters.call(ctx.rate_limiter, gated)
        return await gated()

    def execute_async(
        self,
        operation_id: str,
        work: Work,
        context: Optional[RetryContext] = None,
        *,
        on_success: Optional[Callback] = None,
        on_failure: Optional[Callback] = None,
    ) -> "asyncio.Task[Any]":
        """Run execute_with_retry in a background task; the task can be awaited."""

        async def runner():
            try:
                result = await self.execute_with_retry(operation_id, work, context)
            except Exception as exc:
                if on_failure is not None:
                    await _maybe_await(on_failure(exc))
                raise
            if on_success is not None:
                await _maybe_await(on_success(result))
            return result

        return asyncio.create_task(runner(), name=f"retry:{operation_id}")

    async def execute_batch_with_retry(
        self,
        operation_id: str,
        works: Sequence[Work],
        context: Optional[RetryContext] = None,
    ) -> BatchRetryResult:
        """Retry each work unit independently and aggregate the outcome.

        results holds, per input position, the returned value or the
        exception the unit finally failed with.
        """
        ctx = context or RetryContext()

        async def capture(work):
            try:
                return True, await self.execute_with_retry(operation_id, work, ctx)
            except Exception as exc:
                return False, exc

        outcomes = await asyncio.gather(*(capture(w) for w in works))
        successful = sum(1 for ok, _ in outcomes if ok)
        total = len(outcomes)
        success_rate = successful / total if total else 1.0

        policy = resolve_policy(ctx.retry_policy)
        use_breaker = policy.circuit_breaker if ctx.circuit_breaker is None else ctx.circuit_breaker
        if use_breaker and success_rate < BATCH_HEALTH_THRESHOLD:
            logger.warning(
                "Batch %s success rate %.2f below %.2f; opening circuit",
                operation_id,
                success_rate,
                BATCH_HEALTH_THRESHOLD,
            )
            self.circuit_breakers.trip(operation_id)

        return BatchRetryResult(
            total=total,
            successful=successful,
            failed=total - successful,
            success_rate=round(success_rate, 4),
            results=[value for _, value in outcomes],
        )

    # ─── Analytics ────────────────────────────────────────────────────────────

    def _record(
        self,
        operation_id: str,
        policy: RetryPolicy,
        attempts: int,
        started: float,
        error: Optional[BaseException] = None,
    ) -> None:
        category = self.classifier.classify(error).category if error is not None else None
        self._history.append(
            OperationRecord(
                operation_id=operation_id,
                strategy=policy.strategy,
                attempts=attempts,
                success=error is None,
                duration_ms=int((self._clock() - started) * 1000),
                error_category=category,
            )
        )

    def get_retry_analytics(self, window_hours: int = 24) -> Dict[str, Any]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=window_hours)
        records = [r for r in self._history if r.finished_at >= cutoff]
        total = len(records)
        successes = sum(1 for r in records if r.success)
        retried = sum(1 for r in records if r.attempts > 1)
        success_rate = successes / total if total else 1.0
        retry_rate = retried / total if total else 0.0

        by_strategy: Dict[str, Dict[str, Any]] = {}
        grouped = defaultdict(list)
        for r in records:
            grouped[r.strategy].append(r)
        for strategy, items in grouped.items():
            ok = sum(1 for r in items if r.success)
            by_strategy[strategy] = {
                "operations": len(items),
                "success_rate": round(ok / len(items), 4),
                "average_attempts": round(sum(r.attempts for r in items) / len(items), 2),
            }

        by_operation: Dict[str, Dict[str, Any]] = {}
        for r in records:
            entry = by_operation.setdefault(r.operation_id, {"operations": 0, "failures": 0, "attempts": 0})
            entry["operations"] += 1
            entry["attempts"] += r.attempts
            if not r.success:
                entry["failures"] += 1

        circuits = {name: self.circuit_breakers.state(name) for name in self.circuit_breakers.names()}

        recommendations = []
        if success_rate < 0.8:
            recommendations.append("Consider reviewing and optimizing operations with high failure rates")
        if retry_rate > 0.3:
            recommendations.append("High retry rate detected - investigate underlying causes of failures")
        if any(state == OPEN for state in circuits.values()):
            recommendations.append("Circuit breakers are open for some operations - check system health")
        if not recommendations:
            recommendations.append("Retry system is operating normally")

        return {
            "window_hours": window_hours,
            "total_operations": total,
            "successful_operations": successes,
            "failed_operations": total - successes,
            "success_rate": round(success_rate, 4),
            "retry_rate": round(retry_rate, 4),
            "average_attempts": round(sum(r.attempts for r in records) / total, 2) if total else 0.0,
            "by_strategy": by_strategy,
            "by_operation": by_operation,
            "by_error_category": dict(Counter(r.error_category for r in records if r.error_category)),
            "circuit_breakers": circuits,
            "recommendations": recommendations,
        }

    def reset_retry_state(self, operation_id: Optional[str] = None) -> None:
        if operation_id is None:
            self._history.clear()
            for name in self.circuit_breakers.names():
                self.circuit_breakers.reset(name)
            logger.info("Retry state reset for all operations")
            return
        kept = [r for r in self._history if r.operation_id != operation_id]
        self._history.clear()
        self._history.extend(kept)
        self.circuit_breakers.reset(operation_id)
        logger.info("Retry state reset for %s", operation_id)


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value
