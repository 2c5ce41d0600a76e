"""Step retry budget and backoff calculation.

Backoff in milliseconds for the 0-indexed attempt ``k`` that just failed,
with multiplier ``m``:

- fixed: 1000
- linear: (k + 1) * 1000 * m
- exponential: 2^k * 1000 * m

Every strategy is capped at ``max_backoff_time * 1000``.

Usage:
    strategy = RetryStrategy.from_policy(step.retry_policy or settings.retry_policy)
    while True:
        ...attempt...
        if not strategy.should_retry(attempts_made):
            break
        await sleep(strategy.compute_delay(attempts_made - 1))
"""

from dataclasses import dataclass
from typing import Optional

from core.constants import BackoffStrategy
from workflow.models import RetryPolicy

BASE_DELAY_MS = 1000


def calculate_backoff_ms(attempt_index: int, policy: RetryPolicy) -> int:
    """Delay in milliseconds after the 0-indexed attempt ``attempt_index`` failed."""
    multiplier = policy.backoff_multiplier
    if policy.backoff_strategy == BackoffStrategy.LINEAR:
        delay = (attempt_index + 1) * BASE_DELAY_MS * multiplier
    elif policy.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        delay = (2 ** attempt_index) * BASE_DELAY_MS * multiplier
    else:
        delay = BASE_DELAY_MS
    return int(min(delay, policy.max_backoff_time * 1000))


@dataclass
class RetryStrategy:
    """Retry budget for one step, derived from its effective policy."""

    policy: RetryPolicy

    @classmethod
    def from_policy(cls, policy: Optional[RetryPolicy]) -> "RetryStrategy":
        return cls(policy=policy or RetryPolicy())

    @classmethod
    def from_dict(cls, config: dict) -> "RetryStrategy":
        """Create strategy from a step's ``retry_policy`` dict."""
        return cls(policy=RetryPolicy.model_validate(config))

    def to_dict(self) -> dict:
        return self.policy.model_dump(mode="json")

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed, first one included."""
        return self.policy.attempt_budget

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def compute_delay_ms(self, attempt_index: int) -> int:
        return calculate_backoff_ms(attempt_index, self.policy)

    def compute_delay(self, attempt_index: int) -> float:
        """Delay in seconds after the 0-indexed attempt ``attempt_index`` failed."""
        return self.compute_delay_ms(attempt_index) / 1000
