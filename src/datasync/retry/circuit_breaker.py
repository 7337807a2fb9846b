"""
Named circuit breakers.

closed -> open after failure_threshold consecutive failures; open -> half_open
once cooldown_ms has elapsed since opening; half_open lets exactly one trial
call through: success closes the circuit, failure re-opens it and restarts
the cooldown.

State lives in memory for the lifetime of the registry. Mutations for one
name are serialized by that name's asyncio.Lock; the work itself runs
outside the lock so slow calls never block bookkeeping on other names.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from datasync.errors import CircuitOpenError

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_MS = 60_000

Work = Callable[[], Union[Awaitable[Any], Any]]


async def run_work(work: Work) -> Any:
    """Call work and await the result if it is awaitable."""
    result = work()
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class CircuitBreakerState:
    name: str
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    state: str = CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    blocked_calls: int = 0


class CircuitBreakerRegistry:
    """Map of circuit name -> CircuitBreakerState."""

    def __init__(
        self,
        *,
        default_failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        default_cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_failure_threshold = default_failure_threshold
        self.default_cooldown_ms = default_cooldown_ms
        self._clock = clock
        self._states: Dict[str, CircuitBreakerState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def init(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        cooldown_ms: Optional[int] = None,
    ) -> CircuitBreakerState:
        """Create (or reconfigure) a circuit. Existing counters are kept.

        Raises:
            ValueError: failure_threshold below 1 or negative cooldown_ms.
        """
        threshold = self.default_failure_threshold if failure_threshold is None else failure_threshold
        cooldown = self.default_cooldown_ms if cooldown_ms is None else cooldown_ms
        if threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown < 0:
            raise ValueError("cooldown_ms must be >= 0")
        state = self._states.get(name)
        if state is None:
            state = CircuitBreakerState(name=name)
            self._states[name] = state
            self._locks[name] = asyncio.Lock()
        state.failure_threshold = threshold
        state.cooldown_ms = cooldown
        return state

    def _get(self, name: str) -> CircuitBreakerState:
        if name not in self._states:
            return self.init(name)
        return self._states[name]

    async def call(self, name: str, work: Work) -> Any:
        """Run work through the named circuit.

        Raises:
            CircuitOpenError: the circuit is open (or half-open with a trial
                already in flight); work was not invoked.
            Any exception raised by work, after recording the failure.
        """
        state = self._get(name)
        lock = self._locks[name]

        async with lock:
            state.total_calls += 1
            self._maybe_half_open(state)
            if state.state == OPEN or (state.state == HALF_OPEN and state.trial_in_flight):
                state.blocked_calls += 1
                raise CircuitOpenError(name)
            is_trial = state.state == HALF_OPEN
            if is_trial:
                state.trial_in_flight = True

        try:
            result = await run_work(work)
        except asyncio.CancelledError:
            if is_trial:
                async with lock:
                    state.trial_in_flight = False
            raise
        except Exception:
            async with lock:
                self._record_failure(state, is_trial)
            raise

        async with lock:
            self._record_success(state, is_trial)
        return result

    def _maybe_half_open(self, state: CircuitBreakerState) -> None:
        if state.state != OPEN or state.opened_at is None:
            return
        elapsed_ms = (self._clock() - state.opened_at) * 1000
        if elapsed_ms >= state.cooldown_ms:
            state.state = HALF_OPEN
            state.trial_in_flight = False
            logger.info("Circuit %s half-open after %.0fms", state.name, elapsed_ms)

    def _record_success(self, state: CircuitBreakerState, is_trial: bool) -> None:
        state.successful_calls += 1
        state.consecutive_failures = 0
        if is_trial:
            state.trial_in_flight = False
            state.state = CLOSED
            state.opened_at = None
            logger.info("Circuit %s closed after successful trial", state.name)

    def _record_failure(self, state: CircuitBreakerState, is_trial: bool) -> None:
        state.failed_calls += 1
        state.consecutive_failures += 1
        if is_trial:
            state.trial_in_flight = False
            self._open(state)
        elif state.state == CLOSED and state.consecutive_failures >= state.failure_threshold:
            self._open(state)

    def _open(self, state: CircuitBreakerState) -> None:
        state.state = OPEN
        state.opened_at = self._clock()
        logger.warning(
            "Circuit %s opened after %d consecutive failures",
            state.name,
            state.consecutive_failures,
        )

    def trip(self, name: str) -> None:
        """Force the circuit open (e.g. from a batch health check)."""
        state = self._get(name)
        state.trial_in_flight = False
        self._open(state)

    def reset(self, name: str) -> None:
        state = self._states.get(name)
        if state is None:
            return
        self._states[name] = CircuitBreakerState(
            name=name,
            failure_threshold=state.failure_threshold,
            cooldown_ms=state.cooldown_ms,
        )
        logger.info("Circuit %s reset", name)

    def state(self, name: str) -> str:
        state = self._get(name)
        self._maybe_half_open(state)
        return state.state

    def metrics(self, name: str) -> Dict[str, Any]:
        state = self._get(name)
        self._maybe_half_open(state)
        failure_rate = state.failed_calls / state.total_calls if state.total_calls else 0.0
        return {
            "name": name,
            "state": state.state,
            "consecutive_failures": state.consecutive_failures,
            "failure_threshold": state.failure_threshold,
            "cooldown_ms": state.cooldown_ms,
            "opened_at": state.opened_at,
            "total_calls": state.total_calls,
            "successful_calls": state.successful_calls,
            "failed_calls": state.failed_calls,
            "blocked_calls": state.blocked_calls,
            "failure_rate": round(failure_rate, 4),
        }

    def names(self) -> List[str]:
        return list(self._states)

    def clear(self) -> None:
        self._states.clear()
        self._locks.clear()
