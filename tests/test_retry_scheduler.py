"""
Tests for retry schedule and grace period computation.
"""
from datetime import datetime, timedelta

import pytest

from billing.utils.retry_scheduler import RetryPolicy, RetryScheduler
from billing.utils.time_helpers import UTC

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def scheduler():
    return RetryScheduler(RetryPolicy(schedule_days=(1, 3, 7), grace_period_days=7))


def test_first_failure_schedules_day_one(scheduler):
    d = scheduler.on_failure(failed_attempts=0, now=T0)
    assert d.attempt_number == 1
    assert not d.is_final
    assert d.first_failure_at == T0
    assert d.grace_period_ends_at == T0 + timedelta(days=7)
    assert d.next_retry_at == T0 + timedelta(days=1)


def test_offsets_are_measured_from_first_failure(scheduler):
    d = scheduler.on_failure(failed_attempts=1, now=T0 + timedelta(days=1), first_failure_at=T0,
                             grace_period_ends_at=T0 + timedelta(days=7))
    assert d.attempt_number == 2
    assert d.next_retry_at == T0 + timedelta(days=3)
    assert d.grace_period_ends_at == T0 + timedelta(days=7)


def test_third_failure_is_final(scheduler):
    d = scheduler.on_failure(failed_attempts=2, now=T0 + timedelta(days=3), first_failure_at=T0,
                             grace_period_ends_at=T0 + timedelta(days=7))
    assert d.is_final
    assert d.attempt_number == 3
    assert d.next_retry_at is None
    assert d.grace_period_ends_at == T0 + timedelta(days=7)


def test_late_trigger_never_schedules_in_the_past(scheduler):
    late = T0 + timedelta(days=5)
    d = scheduler.on_failure(failed_attempts=1, now=late, first_failure_at=T0)
    assert d.next_retry_at == late


def test_new_cycle_does_not_inherit_previous_tail(scheduler):
    old = T0 - timedelta(days=40)
    d = scheduler.on_failure(failed_attempts=0, now=T0, first_failure_at=old,
                             grace_period_ends_at=old + timedelta(days=7))
    assert d.first_failure_at == T0
    assert d.grace_period_ends_at == T0 + timedelta(days=7)


def test_retries_left(scheduler):
    assert scheduler.max_attempts == 3
    assert scheduler.retries_left(0) == 3
    assert scheduler.retries_left(2) == 1
    assert scheduler.retries_left(5) == 0


@pytest.mark.parametrize("schedule", [(), (0, 1), (3, 1)])
def test_policy_rejects_bad_schedules(schedule):
    with pytest.raises(ValueError):
        RetryPolicy(schedule_days=schedule)


def test_negative_failed_attempts_rejected(scheduler):
    with pytest.raises(ValueError):
        scheduler.on_failure(failed_attempts=-1, now=T0)
