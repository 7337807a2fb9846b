"""
Backoff delay sequences.

Every function returns the list of delays (milliseconds) to sleep after
failed attempt 1, 2, ... max_attempts. Element i (1-based) is capped at
max_ms. Pure apart from the random source used for jitter.
"""
import random
from typing import List, Union

from datasync.retry.policies import EXPONENTIAL, FIBONACCI, LINEAR, RetryPolicy

Delay = Union[int, float]

JITTER_LOW = 0.5
JITTER_HIGH = 1.5


def exponential(
    base_ms: int,
    max_ms: int,
    max_attempts: int,
    jitter: bool = False,
    multiplier: float = 2.0,
) -> List[Delay]:
    """min(base_ms * multiplier^(i-1), max_ms) for i in 1..max_attempts.

    With jitter each value is scaled by a uniform factor in [0.5, 1.5].
    """
    delays: List[Delay] = []
    for i in range(1, max_attempts + 1):
        value = min(base_ms * multiplier ** (i - 1), max_ms)
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        delays.append(value)
    if jitter:
        return apply_jitter(delays)
    return delays


def linear(delay_ms: int, max_attempts: int) -> List[Delay]:
    return [delay_ms] * max(max_attempts, 0)


def fibonacci(base_ms: int, max_ms: int, max_attempts: int) -> List[Delay]:
    """Fibonacci numbers 1, 1, 2, 3, 5, ... times base_ms, capped at max_ms."""
    delays: List[Delay] = []
    a, b = 1, 1
    for _ in range(max_attempts):
        delays.append(min(a * base_ms, max_ms))
        a, b = b, a + b
    return delays


def apply_jitter(delays: List[Delay]) -> List[float]:
    return [d * random.uniform(JITTER_LOW, JITTER_HIGH) for d in delays]


def delays_for(policy: RetryPolicy) -> List[Delay]:
    """Delay sequence for a policy."""
    if policy.strategy == EXPONENTIAL:
        return exponential(
            policy.base_delay_ms,
            policy.max_delay_ms,
            policy.max_attempts,
            jitter=policy.jitter,
            multiplier=policy.multiplier,
        )
    if policy.strategy == FIBONACCI:
        delays = fibonacci(policy.base_delay_ms, policy.max_delay_ms, policy.max_attempts)
    elif policy.strategy == LINEAR:
        delays = linear(min(policy.base_delay_ms, policy.max_delay_ms), policy.max_attempts)
    else:
        raise ValueError(f"unknown backoff strategy: {policy.strategy}")
    return apply_jitter(delays) if policy.jitter else delays


def total_delay_ms(policy: RetryPolicy) -> float:
    """Worst-case time spent sleeping between attempts.

    The last attempt is not followed by a sleep, so only the first
    max_attempts - 1 delays count. Jittered policies use the upper bound.
    """
    unjittered = policy.with_overrides(jitter=False)
    delays = delays_for(unjittered)[: max(policy.max_attempts - 1, 0)]
    total = float(sum(delays))
    return total * JITTER_HIGH if policy.jitter else total
