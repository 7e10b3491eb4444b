# donation_billing/billing/utils/domain.py
"""
Общие типы биллинга: закрытые enum-статусы и неизменяемые снимки записей.
Репозиторий отдаёт наружу только эти снимки (datetime уже aware UTC),
ORM-объекты за пределы billing_db не выходят.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class SubscriptionStatus(str, enum.Enum):
    INACTIVE = "inactive"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PaymentMethodStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"
    DISABLED = "disabled"


class PaymentProvider(str, enum.Enum):
    """Известные провайдеры. Колонка строковая — новые добавляются без миграции."""

    YOOKASSA = "yookassa"
    GETTRX = "gettrx"
    STRIPE = "stripe"
    BTCPAY = "btcpay"
    MANUAL = "manual"


class AttemptOutcome(str, enum.Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    GATEWAY_ERROR = "gateway_error"


class CycleOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED_FINAL = "failed_final"
    RETRY_SCHEDULED = "retry_scheduled"
    NOT_DUE = "not_due"


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"              # событие закрыло текущий цикл
    DUPLICATE = "duplicate"          # цикл уже закрыт, ничего не делаем
    RECORDED_ONLY = "recorded_only"  # платёж учтён, состояние не трогаем
    IGNORED = "ignored"              # неуспешные/промежуточные статусы


class EventType(str, enum.Enum):
    SUBSCRIPTION_STARTED = "subscription_started"
    TRIAL_STARTED = "trial_started"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAST_DUE = "past_due"
    RECOVERED = "recovered"
    CANCELED = "canceled"
    REACTIVATED = "reactivated"
    PAYMENT_AFTER_CANCELLATION = "payment_after_cancellation"
    PAYMENT_METHOD_DISABLED = "payment_method_disabled"


@dataclass(frozen=True)
class PlanRecord:
    id: str
    name: str
    tier: str
    amount_minor: int
    currency: str
    billing_interval: str = "month"
    trial_days: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class PaymentMethodRecord:
    id: int
    account_id: int
    provider: str
    provider_instrument_id: str
    method_type: str = "card"
    priority: int = 999
    is_default: bool = False
    status: PaymentMethodStatus = PaymentMethodStatus.ACTIVE
    failure_count: int = 0
    brand: Optional[str] = None
    last4: Optional[str] = None
    last_used_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        tail = f"*{self.last4}" if self.last4 else self.provider_instrument_id[-6:]
        return f"{self.provider}:{self.brand or self.method_type}{tail}"


@dataclass(frozen=True)
class AccountRecord:
    id: int
    name: str
    kind: str
    subscription_status: SubscriptionStatus
    subscription_tier: str
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
    settings: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @property
    def charge_due_at(self) -> Optional[datetime]:
        """Когда аккаунт можно списывать: дата ретрая в past_due, иначе дата цикла."""
        return self.next_retry_date or self.next_billing_date
