"""Retry policy definitions and the three named defaults."""
from dataclasses import dataclass, replace
from typing import Dict, Optional, Union

EXPONENTIAL = "exponential_backoff"
LINEAR = "linear_backoff"
FIBONACCI = "fibonacci"

STRATEGIES = (EXPONENTIAL, LINEAR, FIBONACCI)

DEFAULT_POLICY_NAME = "api_operations"


@dataclass(frozen=True)
class RetryPolicy:
    strategy: str = EXPONENTIAL
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    multiplier: float = 2.0
    jitter: bool = False
    circuit_breaker: bool = False

    def __post_init__(self):
        if self.strategy not in STRATEGIES:
            raise ValueError(f"unknown backoff strategy: {self.strategy}")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    def with_overrides(self, **changes) -> "RetryPolicy":
        return replace(self, **changes)


DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    "api_operations": RetryPolicy(
        strategy=EXPONENTIAL,
        max_attempts=3,
        base_delay_ms=1000,
        max_delay_ms=30_000,
        jitter=True,
        circuit_breaker=False,
    ),
    "database_operations": RetryPolicy(
        strategy=EXPONENTIAL,
        max_attempts=5,
        base_delay_ms=500,
        max_delay_ms=10_000,
        jitter=False,
        circuit_breaker=False,
    ),
    "critical_operations": RetryPolicy(
        strategy=FIBONACCI,
        max_attempts=10,
        base_delay_ms=100,
        max_delay_ms=60_000,
        jitter=False,
        circuit_breaker=True,
    ),
}


def resolve_policy(policy: Union[RetryPolicy, str, None]) -> RetryPolicy:
    """Return a RetryPolicy for an explicit policy, a policy name, or None."""
    if isinstance(policy, RetryPolicy):
        return policy
    if policy is None:
        return DEFAULT_POLICIES[DEFAULT_POLICY_NAME]
    try:
        return DEFAULT_POLICIES[policy]
    except KeyError:
        raise ValueError(f"unknown retry policy: {policy}") from None


def policy_name(policy: Optional[RetryPolicy]) -> Optional[str]:
    for name, candidate in DEFAULT_POLICIES.items():
        if candidate == policy:
            return name
    return None
