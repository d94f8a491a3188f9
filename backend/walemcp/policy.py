from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .models import RetryConfig

MAX_BACKOFF_MS = 60_000


@dataclass(frozen=True)
class ExecutionPolicy:
    step_timeout_ms: int = 30_000
    task_timeout_ms: int = 300_000
    max_adaptations: int = 5
    max_unpersisted_results: int = 1_000
    default_retry: RetryConfig = field(default_factory=RetryConfig)


def clamp_timeout_ms(value: Optional[int], policy: ExecutionPolicy) -> int:
    if value is None or value < 1:
        return policy.step_timeout_ms
    return min(value, policy.task_timeout_ms)


def backoff_delay_ms(retry: RetryConfig, attempt: int) -> int:
    if retry.delay_ms <= 0:
        return 0
    delay = retry.delay_ms * (retry.backoff_factor ** max(0, attempt - 1))
    return int(min(delay, MAX_BACKOFF_MS))


def should_retry(retry: RetryConfig, failure_kind: Optional[str]) -> bool:
    if failure_kind is None:
        return False
    if retry.retry_condition == "any":
        return True
    return retry.retry_condition == failure_kind
