"""
Pytest configuration and fixtures for billing engine tests.
"""
import os

# до импорта billing.config: движок БД в тестах — sqlite в памяти
os.environ.setdefault("BILLING_DB_URL", "sqlite://")

import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing.utils.billing_db import BillingRepository, init_schema
from billing.utils.domain import PlanRecord, SubscriptionStatus
from billing.utils.gateway import ChargeResult, ChargeStatus, PaymentGateway
from billing.utils.orchestrator import BillingOrchestrator
from billing.utils.retry_scheduler import RetryPolicy, RetryScheduler
from billing.utils.state_machine import BillingStateMachine
from billing.utils.time_helpers import UTC


class Clock:
    """Управляемые часы для оркестратора."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedGateway(PaymentGateway):
    """
    Фейковый шлюз: ответы задаются по токену инструмента, все вызовы пишутся в calls.
    Без сценария — успех.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.scripts: Dict[str, list] = {}
        self.defaults: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._tx = itertools.count(1)

    def will(self, token: str, *results) -> "ScriptedGateway":
        self.scripts.setdefault(token, []).extend(results)
        return self

    def always(self, token: str, result) -> "ScriptedGateway":
        self.defaults[token] = result
        return self

    def tokens(self) -> List[str]:
        return [c["token"] for c in self.calls]

    def charge(self, instrument_token, amount_minor, currency, idempotency_key, metadata=None):
        with self._lock:
            self.calls.append({
                "token": instrument_token,
                "amount_minor": amount_minor,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "metadata": dict(metadata or {}),
            })
            queue = self.scripts.get(instrument_token)
            result = queue.pop(0) if queue else self.defaults.get(instrument_token, "succeed")
            tx = f"tx-{next(self._tx)}"
        if callable(result):
            result = result()
        if result == "succeed":
            return ChargeResult(ChargeStatus.SUCCEEDED, external_tx_id=tx)
        if result == "decline":
            return ChargeResult(ChargeStatus.DECLINED, external_tx_id=tx, decline_reason="card_declined")
        if result == "error":
            return ChargeResult(ChargeStatus.ERROR, decline_reason="gateway_unavailable")
        return result


class BillingFactory:
    """Заготовки тарифов, аккаунтов и методов оплаты в тестовой БД."""

    def __init__(self, repo: BillingRepository, now: datetime):
        self.repo = repo
        self.now = now

    def plan(self, plan_id: str = "pro_monthly", *, tier: str = "pro", amount_minor: int = 2000,
             currency: str = "USD", billing_interval: str = "month", trial_days: int = 0,
             is_active: bool = True) -> PlanRecord:
        self.repo.plan_upsert(
            plan_id=plan_id, name=plan_id.replace("_", " ").title(), tier=tier,
            amount_minor=amount_minor, currency=currency, billing_interval=billing_interval,
            trial_days=trial_days, is_active=is_active,
        )
        return self.repo.get_plan(plan_id)

    def inactive_account(self, name: str = "Food Bank", settings: Optional[Dict[str, Any]] = None) -> int:
        return self.repo.create_account(name=name, settings=settings)

    def account(self, *, plan: Optional[PlanRecord] = None, status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
                next_billing_date: Optional[datetime] = None, name: str = "Food Bank",
                settings: Optional[Dict[str, Any]] = None, **extra) -> int:
        plan = plan or self.plan()
        account_id = self.repo.create_account(name=name, settings=settings)
        due = next_billing_date or self.now.replace(hour=0, minute=0, second=0, microsecond=0)
        patch = {
            "subscription_status": status,
            "subscription_tier": plan.tier,
            "plan_id": plan.id,
            "amount_minor": plan.amount_minor,
            "currency": plan.currency,
            "billing_cycle_anchor": due,
            "next_billing_date": due,
            "subscription_start_date": due - timedelta(days=31),
        }
        patch.update(extra)
        self.repo.update_account(account_id, patch)
        return account_id

    def method(self, account_id: int, token: str, *, priority: Optional[int] = None, default: bool = False,
               brand: str = "VISA", last4: Optional[str] = None, **patch) -> int:
        method_id = self.repo.add_payment_method(
            account_id=account_id, provider="yookassa", instrument_id=token,
            brand=brand, last4=last4 or token[-4:], priority=priority, make_default=default,
        )
        if patch:
            self.repo.update_payment_method(method_id, patch)
        return method_id


@pytest.fixture
def mock_time():
    """Фиксированное «сейчас» (UTC)."""
    return datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock(mock_time):
    return Clock(mock_time)


@pytest.fixture
def in_memory_db():
    """Репозиторий поверх sqlite в памяти (одно соединение на все потоки)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(bind=engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield BillingRepository(session_factory)
    engine.dispose()


@pytest.fixture
def factory(in_memory_db, mock_time):
    return BillingFactory(in_memory_db, mock_time)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def orchestrator(in_memory_db, gateway, clock):
    orch = BillingOrchestrator(
        in_memory_db,
        gateway,
        scheduler=RetryScheduler(RetryPolicy(schedule_days=(1, 3, 7), grace_period_days=7)),
        state_machine=BillingStateMachine(base_tier="basic"),
        clock=clock,
        gateway_timeout=2.0,
    )
    yield orch
    orch.close()


@pytest.fixture
def mock_dedup():
    """Redis-идемпотентность вебхуков: по умолчанию событие новое."""
    dedup = AsyncMock()
    dedup.should_process = AsyncMock(return_value=True)
    dedup.forget = AsyncMock(return_value=None)
    return dedup


@pytest.fixture
def sample_payment_webhook_succeeded():
    """Sample YooKassa webhook payload for a recurring charge confirmed late."""
    return {
        "type": "notification",
        "event": "payment.succeeded",
        "object": {
            "id": "2f5e1b7a-000f-5000-9000-1a2b3c4d5e6f",
            "status": "succeeded",
            "paid": True,
            "amount": {"value": "20.00", "currency": "USD"},
            "created_at": "2026-01-15T00:00:05.000Z",
            "payment_method": {
                "id": "pm_visa_4242",
                "type": "bank_card",
                "saved": True,
                "card": {"card_type": "Visa", "first6": "424242", "last4": "4242"},
            },
            "metadata": {
                "account_id": "1",
                "cycle": "20260115T000000Z",
                "payment_method_id": "1",
                "plan_id": "pro_monthly",
                "purpose": "renewal",
                "is_recurring": "1",
            },
        },
    }


@pytest.fixture
def sample_payment_webhook_canceled():
    """Sample YooKassa webhook payload for a canceled payment."""
    return {
        "type": "notification",
        "event": "payment.canceled",
        "object": {
            "id": "2f5e1b7a-000f-5000-9000-ffffffffffff",
            "status": "canceled",
            "amount": {"value": "20.00", "currency": "USD"},
            "cancellation_details": {"party": "payment_network", "reason": "insufficient_funds"},
            "metadata": {"account_id": "1", "cycle": "20260115T000000Z", "purpose": "renewal"},
        },
    }
