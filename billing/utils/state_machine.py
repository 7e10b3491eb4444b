# donation_billing/billing/utils/state_machine.py
"""
Машина состояний подписки аккаунта.

Чистый модуль: принимает снимок BillingState и триггер, возвращает Transition
(новое состояние + события). В БД ничего не пишет — этим занимается оркестратор,
он же сериализует переходы по account_id.

    inactive  --charge_succeeded-->  active      (старт подписки)
    inactive  --start_trial------->  trialing
    trialing/active/past_due --charge_succeeded--> active (следующий цикл)
    trialing/active --charge_failed--> past_due (открывается grace period)
    past_due  --charge_failed------>  past_due | canceled (попытки исчерпаны)
    *         --cancel------------->  canceled
    canceled/inactive --reactivate-> inactive (дальше — новое первичное списание)
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Tuple

from billing.config import BASE_TIER
from billing.utils.domain import AccountRecord, EventType, PlanRecord, SubscriptionStatus
from billing.utils.errors import InvalidTransition
from billing.utils.retry_scheduler import RetryDecision
from billing.utils.time_helpers import add_interval

S = SubscriptionStatus


class Trigger(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    START_TRIAL = "start_trial"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"


# Полная таблица допустимых переходов; всё, чего здесь нет, — InvalidTransition
ALLOWED: Dict[Trigger, FrozenSet[SubscriptionStatus]] = {
    Trigger.CHARGE_SUCCEEDED: frozenset({S.INACTIVE, S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Trigger.CHARGE_FAILED: frozenset({S.INACTIVE, S.TRIALING, S.ACTIVE, S.PAST_DUE}),
    Trigger.START_TRIAL: frozenset({S.INACTIVE}),
    Trigger.CANCEL: frozenset(S),
    Trigger.REACTIVATE: frozenset({S.INACTIVE, S.CANCELED}),
}

CANCEL_REASON_PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class BillingState:
    """Биллинговые колонки аккаунта. Имена полей совпадают с колонками accounts (кроме status/tier)."""

    status: SubscriptionStatus
    tier: str
    plan_id: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    billing_cycle_anchor: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    next_retry_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    failed_attempts: int = 0
    first_failure_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None
    primary_payment_method_id: Optional[int] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @classmethod
    def from_account(cls, account: AccountRecord) -> "BillingState":
        values = {f.name: getattr(account, f.name) for f in fields(cls) if f.name not in ("status", "tier")}
        return cls(status=account.subscription_status, tier=account.subscription_tier, **values)


_COLUMN_NAMES = {"status": "subscription_status", "tier": "subscription_tier"}


def state_patch(before: BillingState, after: BillingState) -> Dict[str, Any]:
    """Колонки accounts, которые надо обновить, чтобы перейти из before в after."""
    patch: Dict[str, Any] = {}
    for f in fields(BillingState):
        old, new = getattr(before, f.name), getattr(after, f.name)
        if old != new:
            patch[_COLUMN_NAMES.get(f.name, f.name)] = new
    return patch


@dataclass(frozen=True)
class Transition:
    trigger: Trigger
    before: BillingState
    state: BillingState
    events: Tuple[EventType, ...] = ()

    @property
    def changed(self) -> bool:
        return self.before != self.state

    def patch(self) -> Dict[str, Any]:
        return state_patch(self.before, self.state)


class BillingStateMachine:
    def __init__(self, *, base_tier: str = BASE_TIER):
        self.base_tier = base_tier

    @staticmethod
    def _check(state: BillingState, trigger: Trigger) -> None:
        if state.status not in ALLOWED[trigger]:
            raise InvalidTransition(state.status, trigger.value)

    # ──────────────────────────────────────────────────────────────────────
    # Успешное списание
    # ──────────────────────────────────────────────────────────────────────
    def on_charge_success(
        self,
        state: BillingState,
        *,
        plan: PlanRecord,
        now: datetime,
        payment_method_id: Optional[int] = None,
    ) -> Transition:
        self._check(state, Trigger.CHARGE_SUCCEEDED)
        settled = dict(
            status=S.ACTIVE,
            tier=plan.tier,
            last_payment_date=now,
            failed_attempts=0,
            first_failure_at=None,
            grace_period_ends_at=None,
            next_retry_date=None,
            primary_payment_method_id=payment_method_id or state.primary_payment_method_id,
        )

        if state.status is S.INACTIVE:
            # старт (или рестарт после реактивации): цикл якорится на момент оплаты
            new = replace(
                state,
                plan_id=plan.id,
                amount_minor=state.amount_minor or plan.amount_minor,
                currency=state.currency or plan.currency,
                billing_cycle_anchor=now,
                next_billing_date=add_interval(now, plan.billing_interval),
                subscription_start_date=now,
                subscription_end_date=None,
                canceled_at=None,
                cancel_reason=None,
                **settled,
            )
            return Transition(Trigger.CHARGE_SUCCEEDED, state, new,
                              (EventType.SUBSCRIPTION_STARTED, EventType.PAYMENT_SUCCEEDED))

        # следующий цикл считается от даты текущего цикла, а не от now
        cycle_date = state.next_billing_date or now
        new = replace(state, next_billing_date=add_interval(cycle_date, plan.billing_interval), **settled)
        events: Tuple[EventType, ...] = (EventType.PAYMENT_SUCCEEDED,)
        if state.status is S.PAST_DUE:
            events += (EventType.RECOVERED,)
        return Transition(Trigger.CHARGE_SUCCEEDED, state, new, events)

    # ──────────────────────────────────────────────────────────────────────
    # Неуспешный цикл (все кандидаты отказали или их нет)
    # ──────────────────────────────────────────────────────────────────────
    def on_charge_failure(self, state: BillingState, *, decision: Optional[RetryDecision], now: datetime) -> Transition:
        self._check(state, Trigger.CHARGE_FAILED)

        if state.status is S.INACTIVE:
            # неудачное первичное списание — подписка просто не стартует, ретраев нет
            return Transition(Trigger.CHARGE_FAILED, state, state, (EventType.PAYMENT_FAILED,))

        if decision is None:
            raise ValueError("retry decision is required for a recurring cycle failure")

        if decision.is_final:
            # grace_period_ends_at оставляем как был — это история цикла
            new = replace(
                state,
                status=S.CANCELED,
                tier=self.base_tier,
                failed_attempts=decision.attempt_number,
                first_failure_at=decision.first_failure_at,
                grace_period_ends_at=decision.grace_period_ends_at,
                next_retry_date=None,
                subscription_end_date=now,
                canceled_at=now,
                cancel_reason=CANCEL_REASON_PAYMENT_FAILED,
            )
            return Transition(Trigger.CHARGE_FAILED, state, new, (EventType.PAYMENT_FAILED, EventType.CANCELED))

        new = replace(
            state,
            status=S.PAST_DUE,
            failed_attempts=decision.attempt_number,
            first_failure_at=decision.first_failure_at,
            grace_period_ends_at=decision.grace_period_ends_at,
            next_retry_date=decision.next_retry_at,
        )
        events: Tuple[EventType, ...] = (EventType.PAYMENT_FAILED,)
        if state.status is not S.PAST_DUE:
            events += (EventType.PAST_DUE,)
        return Transition(Trigger.CHARGE_FAILED, state, new, events)

    # ──────────────────────────────────────────────────────────────────────
    # Триал / отмена / реактивация
    # ──────────────────────────────────────────────────────────────────────
    def start_trial(self, state: BillingState, *, plan: PlanRecord, now: datetime) -> Transition:
        self._check(state, Trigger.START_TRIAL)
        if plan.trial_days <= 0:
            raise ValueError(f"Plan {plan.id} has no trial")
        trial_ends = add_interval(now, "day", plan.trial_days)
        new = replace(
            state,
            status=S.TRIALING,
            tier=plan.tier,
            plan_id=plan.id,
            amount_minor=plan.amount_minor,
            currency=plan.currency,
            subscription_start_date=now,
            billing_cycle_anchor=trial_ends,
            next_billing_date=trial_ends,
            subscription_end_date=None,
            canceled_at=None,
            cancel_reason=None,
        )
        return Transition(Trigger.START_TRIAL, state, new, (EventType.TRIAL_STARTED,))

    def cancel(self, state: BillingState, *, now: datetime, reason: Optional[str] = None) -> Transition:
        """Явная отмена из любого состояния. Повторная отмена — no-op без событий."""
        self._check(state, Trigger.CANCEL)
        if state.status is S.CANCELED:
            return Transition(Trigger.CANCEL, state, state)
        new = replace(
            state,
            status=S.CANCELED,
            tier=self.base_tier,
            next_billing_date=None,
            next_retry_date=None,
            first_failure_at=None,
            grace_period_ends_at=None,
            subscription_end_date=now,
            canceled_at=now,
            cancel_reason=reason or "canceled_by_request",
        )
        return Transition(Trigger.CANCEL, state, new, (EventType.CANCELED,))

    def reactivate(self, state: BillingState, *, plan: PlanRecord) -> Transition:
        """
        Не «размораживает» старую подписку, а готовит чистое состояние под новое
        первичное списание (inactive + выбранный план).
        """
        self._check(state, Trigger.REACTIVATE)
        new = replace(
            state,
            status=S.INACTIVE,
            plan_id=plan.id,
            amount_minor=plan.amount_minor,
            currency=plan.currency,
            failed_attempts=0,
            first_failure_at=None,
            grace_period_ends_at=None,
            next_retry_date=None,
            next_billing_date=None,
        )
        return Transition(Trigger.REACTIVATE, state, new)

    # ──────────────────────────────────────────────────────────────────────
    # Доступ к функциям тарифа
    # ──────────────────────────────────────────────────────────────────────
    @staticmethod
    def in_grace_period(state: BillingState, now: datetime) -> bool:
        return (
            state.status is S.PAST_DUE
            and state.grace_period_ends_at is not None
            and now < state.grace_period_ends_at
        )

    def has_access(self, state: BillingState, now: datetime) -> bool:
        if state.status in (S.ACTIVE, S.TRIALING):
            return True
        if state.status is S.PAST_DUE:
            return self.in_grace_period(state, now)
        return False
