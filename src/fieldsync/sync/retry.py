"""
Retry policy for queue entries.

The ceiling itself is enforced by LocalStore.mark_mutation_failed(); this
policy adds an optional backoff hook deciding whether a still-pending entry
that failed before is due for another attempt in the current pass.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from fieldsync.models.mutation import Mutation

# retry_count -> seconds to wait after the last attempt
BackoffHook = Callable[[int], float]


@dataclass
class RetryPolicy:
    max_retries: int = 3
    backoff: Optional[BackoffHook] = None

    def is_due(self, entry: Mutation, now_ms: int) -> bool:
        if self.backoff is None or entry.retry_count == 0 or entry.last_attempt is None:
            return True
        delay_ms = int(self.backoff(entry.retry_count) * 1000)
        return entry.last_attempt + delay_ms <= now_ms


def fixed_backoff(seconds: float) -> BackoffHook:
    return lambda retry_count: seconds


def exponential_backoff(base_seconds: float = 30.0, cap_seconds: float = 3600.0) -> BackoffHook:
    return lambda retry_count: min(cap_seconds, base_seconds * (2 ** (retry_count - 1)))
