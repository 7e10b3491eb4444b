# donation_billing/billing/utils/retry_scheduler.py
"""
Политика ретраев неуспешного биллингового цикла.

Расписание — смещения в днях от ПЕРВОЙ неудачи цикла (по умолчанию [1, 3, 7]).
max_attempts = len(schedule): попытки считаются вместе с исходным списанием.
Grace period фиксируется в момент первой неудачи (first_failure + 7 дней)
и не продлевается последующими ретраями.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from billing.config import GRACE_PERIOD_DAYS, RETRY_SCHEDULE_DAYS


@dataclass(frozen=True)
class RetryPolicy:
    schedule_days: Sequence[int] = (1, 3, 7)
    grace_period_days: int = 7

    def __post_init__(self):
        if not self.schedule_days:
            raise ValueError("retry schedule must not be empty")
        if any(d <= 0 for d in self.schedule_days):
            raise ValueError(f"retry offsets must be positive days, got {list(self.schedule_days)}")
        if list(self.schedule_days) != sorted(self.schedule_days):
            raise ValueError(f"retry offsets must be ascending, got {list(self.schedule_days)}")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must be >= 0")

    @property
    def max_attempts(self) -> int:
        return len(self.schedule_days)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(schedule_days=tuple(RETRY_SCHEDULE_DAYS), grace_period_days=GRACE_PERIOD_DAYS)


@dataclass(frozen=True)
class RetryDecision:
    attempt_number: int                 # номер неудачи в цикле, с 1
    is_final: bool
    first_failure_at: datetime
    grace_period_ends_at: datetime
    next_retry_at: Optional[datetime]   # None, если попытки исчерпаны


class RetryScheduler:
    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy.from_config()

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def on_failure(
        self,
        *,
        failed_attempts: int,
        now: datetime,
        first_failure_at: Optional[datetime] = None,
        grace_period_ends_at: Optional[datetime] = None,
    ) -> RetryDecision:
        """
        failed_attempts — сколько неудач в цикле было ДО текущей.
        Первая неудача (failed_attempts == 0) открывает grace period;
        для последующих first_failure_at/grace_period_ends_at берутся как есть.
        """
        if failed_attempts < 0:
            raise ValueError(f"failed_attempts must be >= 0, got {failed_attempts}")
        n = failed_attempts + 1

        if failed_attempts == 0:
            # новый цикл: хвосты прошлого цикла не наследуем
            first_failure_at, grace_period_ends_at = now, None
        elif first_failure_at is None:
            first_failure_at = now
        if grace_period_ends_at is None:
            grace_period_ends_at = first_failure_at + timedelta(days=self.policy.grace_period_days)

        if n >= self.policy.max_attempts:
            return RetryDecision(
                attempt_number=n,
                is_final=True,
                first_failure_at=first_failure_at,
                grace_period_ends_at=grace_period_ends_at,
                next_retry_at=None,
            )

        next_retry_at = first_failure_at + timedelta(days=self.policy.schedule_days[n - 1])
        # опоздавший триггер: ретрай не может оказаться в прошлом
        if next_retry_at < now:
            next_retry_at = now
        return RetryDecision(
            attempt_number=n,
            is_final=False,
            first_failure_at=first_failure_at,
            grace_period_ends_at=grace_period_ends_at,
            next_retry_at=next_retry_at,
        )

    def retries_left(self, failed_attempts: int) -> int:
        return max(self.policy.max_attempts - failed_attempts, 0)
