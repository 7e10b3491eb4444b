# donation_billing/billing/utils/billing_db.py
#I'm using MYSQL8+ for this proj.
from __future__ import annotations

import logging
from typing import Optional, Any, List, Dict
from datetime import datetime

from sqlalchemy import (
    create_engine, inspect, func,
    String, Integer, ForeignKey, DateTime, Text, Boolean, JSON,
    Enum as SAEnum, UniqueConstraint,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, sessionmaker, Session
)

from billing.config import DB_URL, DEFAULT_CURRENCY  # <— общий DSN для биллинга
from billing.utils.domain import (
    AccountRecord, AttemptOutcome, PaymentMethodRecord, PaymentMethodStatus,
    PlanRecord, SubscriptionStatus,
)
from billing.utils.errors import (
    AccountNotFound, DuplicatePaymentMethod, PaymentMethodNotFound, StaleStateError,
)
from billing.utils.time_helpers import now_utc, to_utc_for_db, from_db_naive

logger = logging.getLogger(__name__)


# =========================
#     ORM Base & Engine
# =========================
class Base(DeclarativeBase):
    pass


def _make_engine():
    eng = create_engine(
        DB_URL,
        future=True,
        echo=False,
        pool_pre_ping=True,
    )
    return eng


engine = _make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def _enum_column(enum_cls, length: int = 16):
    # храним value ("past_due"), а не имя члена enum
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


# =========================
#          Models
# =========================
class Plan(Base):
    """
    Каталог тарифов. Для движка — только чтение.
    """
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)                     # pro_monthly
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)                      # basic|pro|elite
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)                 # 2000 = 20.00
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default=DEFAULT_CURRENCY)
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="month")
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class Account(Base):
    """
    Организация или донор с рекуррентным обязательством.
    """
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="organization")   # organization|donor

    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.INACTIVE
    )
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="basic")
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    billing_cycle_anchor: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # дата следующего ретрая в past_due; якорь цикла (next_billing_date) при этом не двигается
    next_retry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    primary_payment_method_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # кастомные/платные настройки — при отмене не трогаем
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class PaymentMethod(Base):
    """
    Сохранённые платёжные инструменты (токены провайдера, не реквизиты).
    """
    __tablename__ = "payment_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False)

    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="yookassa")
    provider_instrument_id: Mapped[str] = mapped_column(String(128), nullable=False)   # токен провайдера
    method_type: Mapped[str] = mapped_column(String(32), nullable=False, default="card")

    brand: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # 'VISA', 'MC', 'Mir'
    last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    exp_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    exp_year:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=999)        # 0 — самый приоритетный
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[PaymentMethodStatus] = mapped_column(
        _enum_column(PaymentMethodStatus), nullable=False, default=PaymentMethodStatus.ACTIVE
    )
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_instrument_id", name="uq_pm_provider_token"),
    )


class BillingAttempt(Base):
    """
    Попытки списания. settled_cycle заполняется только у успешных попыток и
    уникален в пределах аккаунта: второй успех за тот же цикл БД не примет.
    """
    __tablename__ = "billing_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False)
    payment_method_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Якорь цикла: next_billing_date на момент списания
    cycle_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    outcome: Mapped[AttemptOutcome] = mapped_column(_enum_column(AttemptOutcome), nullable=False)
    decline_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_tx_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="cycle")     # cycle|webhook
    settled_cycle: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "settled_cycle", name="uq_attempt_settled_cycle"),
    )


class RevenueRecord(Base):
    """
    Передача выручки во внешний учёт. Ровно одна запись на ключ цикла.
    """
    __tablename__ = "revenue_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    account_id: Mapped[int] = mapped_column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False)
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    context_type: Mapped[str] = mapped_column(String(32), nullable=False, default="subscription")
    source: Mapped[str] = mapped_column(String(32), nullable=False)      # subscription_renewal|subscription_start|late_payment
    external_tx_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)


class BillingEvent(Base):
    """
    Outbox событий для нотификатора (идемпотентность по dedupe_key).
    """
    __tablename__ = "billing_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dedupe_key: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    account_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now_utc, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# =========================
#       Repository
# =========================
def init_schema(bind=None) -> None:
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    # Проверяем через Inspector и добавляем отсутствующие индексы.
    with bind.begin() as conn:
        insp = inspect(conn)

        # ---- accounts: выборка «кого пора списывать» ----
        acc_indexes = {ix["name"] for ix in insp.get_indexes("accounts")}
        if "idx_acc_status_next" not in acc_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_acc_status_next ON accounts (subscription_status, next_billing_date)")
        if "idx_acc_status_retry" not in acc_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_acc_status_retry ON accounts (subscription_status, next_retry_date)")

        # ---- payment_methods: резолвер ----
        pm_indexes = {ix["name"] for ix in insp.get_indexes("payment_methods")}
        if "idx_pm_account_status" not in pm_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_pm_account_status ON payment_methods (account_id, status, priority)")

        # ---- billing_attempts: попытки по циклу ----
        attempts_indexes = {ix["name"] for ix in insp.get_indexes("billing_attempts")}
        if "idx_attempt_acc_cycle" not in attempts_indexes:
            conn.exec_driver_sql("CREATE INDEX idx_attempt_acc_cycle ON billing_attempts (account_id, cycle_date)")


def _dt(value: Any) -> Any:
    """Значение для записи в колонку: aware datetime -> UTC, остальное как есть."""
    if isinstance(value, datetime):
        return to_utc_for_db(value)
    return value


def _plan_record(rec: Plan) -> PlanRecord:
    return PlanRecord(
        id=rec.id,
        name=rec.name,
        tier=rec.tier,
        amount_minor=rec.amount_minor,
        currency=rec.currency,
        billing_interval=rec.billing_interval,
        trial_days=rec.trial_days or 0,
        is_active=bool(rec.is_active),
    )


def _account_record(rec: Account) -> AccountRecord:
    return AccountRecord(
        id=rec.id,
        name=rec.name,
        kind=rec.kind,
        subscription_status=SubscriptionStatus(rec.subscription_status),
        subscription_tier=rec.subscription_tier,
        plan_id=rec.plan_id,
        amount_minor=rec.amount_minor,
        currency=rec.currency,
        billing_cycle_anchor=from_db_naive(rec.billing_cycle_anchor),
        next_billing_date=from_db_naive(rec.next_billing_date),
        next_retry_date=from_db_naive(rec.next_retry_date),
        last_payment_date=from_db_naive(rec.last_payment_date),
        failed_attempts=rec.failed_attempts or 0,
        first_failure_at=from_db_naive(rec.first_failure_at),
        grace_period_ends_at=from_db_naive(rec.grace_period_ends_at),
        primary_payment_method_id=rec.primary_payment_method_id,
        subscription_start_date=from_db_naive(rec.subscription_start_date),
        subscription_end_date=from_db_naive(rec.subscription_end_date),
        canceled_at=from_db_naive(rec.canceled_at),
        cancel_reason=rec.cancel_reason,
        settings=dict(rec.settings or {}),
        version=rec.version or 0,
    )


def _method_record(rec: PaymentMethod) -> PaymentMethodRecord:
    return PaymentMethodRecord(
        id=rec.id,
        account_id=rec.account_id,
        provider=rec.provider,
        provider_instrument_id=rec.provider_instrument_id,
        method_type=rec.method_type,
        priority=rec.priority,
        is_default=bool(rec.is_default),
        status=PaymentMethodStatus(rec.status),
        failure_count=rec.failure_count or 0,
        brand=rec.brand,
        last4=rec.last4,
        last_used_at=from_db_naive(rec.last_used_at),
        last_success_at=from_db_naive(rec.last_success_at),
        last_failure_at=from_db_naive(rec.last_failure_at),
        created_at=from_db_naive(rec.created_at),
        deleted_at=from_db_naive(rec.deleted_at),
    )


def _attempt_dict(rec: BillingAttempt) -> Dict[str, Any]:
    return {
        "id": rec.id,
        "account_id": rec.account_id,
        "payment_method_id": rec.payment_method_id,
        "cycle_date": from_db_naive(rec.cycle_date),
        "idempotency_key": rec.idempotency_key,
        "amount_minor": rec.amount_minor,
        "currency": rec.currency,
        "outcome": AttemptOutcome(rec.outcome),
        "decline_reason": rec.decline_reason,
        "external_tx_id": rec.external_tx_id,
        "source": rec.source,
        "settled_cycle": rec.settled_cycle,
        "attempted_at": from_db_naive(rec.attempted_at),
    }


_ACCOUNT_MUTABLE = frozenset(
    c for c in Account.__table__.columns.keys() if c not in ("id", "created_at", "updated_at", "version")
)
_METHOD_MUTABLE = frozenset(
    c for c in PaymentMethod.__table__.columns.keys() if c not in ("id", "account_id", "created_at", "updated_at")
)


class BillingRepository:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # ──────────────────────────────────────────────────────────────────────
    # Plans
    # ──────────────────────────────────────────────────────────────────────
    def get_plan(self, plan_id: Optional[str]) -> Optional[PlanRecord]:
        if not plan_id:
            return None
        with self._session() as s:
            rec = s.get(Plan, plan_id)
            return _plan_record(rec) if rec else None

    def plan_upsert(
        self,
        *,
        plan_id: str,
        name: str,
        tier: str,
        amount_minor: int,
        currency: str,
        billing_interval: str = "month",
        trial_days: int = 0,
        is_active: bool = True,
    ) -> str:
        """Заведение/обновление тарифа (сидинг каталога, админка)."""
        with self._session() as s, s.begin():
            rec = s.get(Plan, plan_id)
            if rec is None:
                rec = Plan(id=plan_id)
                s.add(rec)
            rec.name = name
            rec.tier = tier
            rec.amount_minor = amount_minor
            rec.currency = currency
            rec.billing_interval = billing_interval
            rec.trial_days = trial_days
            rec.is_active = is_active
            s.flush()
            return rec.id

    # ──────────────────────────────────────────────────────────────────────
    # Accounts
    # ──────────────────────────────────────────────────────────────────────
    def create_account(
        self,
        *,
        name: str,
        kind: str = "organization",
        tier: str = "basic",
        settings: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._session() as s, s.begin():
            rec = Account(
                name=name,
                kind=kind,
                subscription_status=SubscriptionStatus.INACTIVE,
                subscription_tier=tier,
                settings=dict(settings or {}),
                version=0,
            )
            s.add(rec)
            s.flush()
            return rec.id

    def get_account(self, account_id: int) -> Optional[AccountRecord]:
        with self._session() as s:
            rec = s.get(Account, account_id)
            return _account_record(rec) if rec else None

    def update_account(
        self,
        account_id: int,
        patch: Dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> AccountRecord:
        """
        Атомарно применяет patch к аккаунту (SELECT FOR UPDATE).
        expected_version — оптимистичная проверка: если аккаунт успели изменить,
        поднимаем StaleStateError и ничего не пишем.
        """
        unknown = set(patch) - _ACCOUNT_MUTABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        with self._session() as s, s.begin():
            rec: Account | None = s.query(Account).with_for_update().filter(Account.id == account_id).one_or_none()
            if rec is None:
                raise AccountNotFound(account_id)
            if expected_version is not None and (rec.version or 0) != expected_version:
                raise StaleStateError(account_id, expected_version)
            for key, value in patch.items():
                setattr(rec, key, _dt(value))
            rec.version = (rec.version or 0) + 1
            rec.updated_at = to_utc_for_db(now_utc())
            s.flush()
            return _account_record(rec)

    def accounts_due(self, *, now: datetime, limit: int = 200) -> List[int]:
        """
        Аккаунты, которые пора списывать: coalesce(next_retry_date, next_billing_date) <= now.
        Canceled/inactive не попадают — у них биллинг остановлен.
        """
        now_db = to_utc_for_db(now)
        due_at = func.coalesce(Account.next_retry_date, Account.next_billing_date)
        with self._session() as s:
            rows = (
                s.query(Account.id)
                 .filter(
                    Account.subscription_status.in_(
                        (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)
                    ),
                    due_at.isnot(None),
                    due_at <= now_db,
                 )
                 .order_by(due_at.asc(), Account.id.asc())
                 .limit(int(limit))
                 .all()
            )
            return [aid for (aid,) in rows]

    # ──────────────────────────────────────────────────────────────────────
    # Payment methods
    # ──────────────────────────────────────────────────────────────────────
    def list_payment_methods(self, account_id: int, *, include_deleted: bool = False) -> List[PaymentMethodRecord]:
        with self._session() as s:
            q = s.query(PaymentMethod).filter(PaymentMethod.account_id == account_id)
            if not include_deleted:
                q = q.filter(PaymentMethod.deleted_at.is_(None))
            return [_method_record(rec) for rec in q.order_by(PaymentMethod.id.asc()).all()]

    def get_payment_method(self, method_id: int) -> Optional[PaymentMethodRecord]:
        with self._session() as s:
            rec = s.get(PaymentMethod, method_id)
            return _method_record(rec) if rec else None

    def update_payment_method(self, method_id: int, patch: Dict[str, Any]) -> PaymentMethodRecord:
        unknown = set(patch) - _METHOD_MUTABLE
        if unknown:
            raise ValueError(f"Unknown payment method fields: {sorted(unknown)}")
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == method_id).one_or_none()
            if rec is None:
                raise PaymentMethodNotFound(method_id)
            for key, value in patch.items():
                setattr(rec, key, _dt(value))
            rec.updated_at = to_utc_for_db(now_utc())
            s.flush()
            return _method_record(rec)

    def record_method_failure(self, method_id: int, *, now: datetime, disable_at: int) -> PaymentMethodRecord:
        """Инкремент failure_count одним UPDATE под локом строки; на disable_at — disabled."""
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == method_id).one_or_none()
            if rec is None:
                raise PaymentMethodNotFound(method_id)
            rec.failure_count = (rec.failure_count or 0) + 1
            rec.last_failure_at = to_utc_for_db(now)
            rec.last_used_at = to_utc_for_db(now)
            if rec.failure_count >= disable_at:
                rec.status = PaymentMethodStatus.DISABLED
            rec.updated_at = to_utc_for_db(now)
            s.flush()
            return _method_record(rec)

    def record_method_success(self, method_id: int, *, now: datetime) -> PaymentMethodRecord:
        with self._session() as s, s.begin():
            rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == method_id).one_or_none()
            if rec is None:
                raise PaymentMethodNotFound(method_id)
            rec.failure_count = 0
            rec.last_success_at = to_utc_for_db(now)
            rec.last_used_at = to_utc_for_db(now)
            rec.updated_at = to_utc_for_db(now)
            s.flush()
            return _method_record(rec)

    def payment_method_upsert_from_provider(
        self,
        *,
        account_id: int,
        provider: str,
        instrument_id: str,
        method_type: str = "card",
        brand: Optional[str] = None,
        last4: Optional[str] = None,
        exp_month: Optional[int] = None,
        exp_year: Optional[int] = None,
    ) -> int:
        """
        Синхронизация с провайдером: новый токен — priority 999, существующий —
        обновляем и «воскрешаем». Счётчик ошибок не трогаем: disabled снимается
        только явным enable_payment_method.
        """
        with self._session() as s, s.begin():
            rec = (
                s.query(PaymentMethod)
                .filter(PaymentMethod.provider == provider, PaymentMethod.provider_instrument_id == instrument_id)
                .one_or_none()
            )
            if rec is None:
                rec = PaymentMethod(
                    account_id=account_id, provider=provider, provider_instrument_id=instrument_id,
                    method_type=method_type, brand=brand, last4=last4,
                    exp_month=exp_month, exp_year=exp_year,
                    priority=999, is_default=False,
                    status=PaymentMethodStatus.ACTIVE, failure_count=0,
                )
                s.add(rec)
                s.flush()
                return rec.id
            rec.account_id = account_id
            rec.method_type = method_type or rec.method_type
            rec.brand = brand or rec.brand
            rec.last4 = last4 or rec.last4
            rec.exp_month = exp_month or rec.exp_month
            rec.exp_year = exp_year or rec.exp_year
            rec.deleted_at = None
            if rec.status is PaymentMethodStatus.EXPIRED:
                rec.status = PaymentMethodStatus.ACTIVE
            rec.updated_at = to_utc_for_db(now_utc())
            s.flush()
            return rec.id

    def add_payment_method(
        self,
        *,
        account_id: int,
        provider: str,
        instrument_id: str,
        method_type: str = "card",
        brand: Optional[str] = None,
        last4: Optional[str] = None,
        priority: Optional[int] = None,
        make_default: bool = False,
    ) -> int:
        """Явное добавление метода. Дубль (тот же provider + токен, не удалён) — DuplicatePaymentMethod."""
        with self._session() as s, s.begin():
            if s.get(Account, account_id) is None:
                raise AccountNotFound(account_id)
            existing = (
                s.query(PaymentMethod)
                .filter(PaymentMethod.provider == provider, PaymentMethod.provider_instrument_id == instrument_id)
                .one_or_none()
            )
            if existing is not None and existing.deleted_at is None:
                raise DuplicatePaymentMethod(f"{provider}:{instrument_id} already attached to account {existing.account_id}")
            if existing is not None:
                # удалённый ранее токен привязываем заново
                rec = existing
                rec.account_id = account_id
                rec.deleted_at = None
                rec.status = PaymentMethodStatus.ACTIVE
                rec.failure_count = 0
            else:
                rec = PaymentMethod(account_id=account_id, provider=provider, provider_instrument_id=instrument_id)
                s.add(rec)
            rec.method_type = method_type
            rec.brand = brand
            rec.last4 = last4
            rec.priority = 999 if priority is None else priority
            rec.is_default = False
            s.flush()
            if make_default:
                self._make_default(s, account_id, rec)
            return rec.id

    @staticmethod
    def _make_default(s: Session, account_id: int, target: PaymentMethod) -> None:
        for pm in s.query(PaymentMethod).filter(
            PaymentMethod.account_id == account_id,
            PaymentMethod.is_default.is_(True),
            PaymentMethod.id != target.id,
        ).all():
            pm.is_default = False
        target.is_default = True
        target.priority = 0
        acc = s.get(Account, account_id)
        if acc is not None:
            acc.primary_payment_method_id = target.id
            acc.version = (acc.version or 0) + 1

    def _owned_method(self, s: Session, account_id: int, method_id: int) -> PaymentMethod:
        rec = s.query(PaymentMethod).with_for_update().filter(PaymentMethod.id == method_id).one_or_none()
        if rec is None or rec.account_id != account_id or rec.deleted_at is not None:
            raise PaymentMethodNotFound(method_id, account_id)
        return rec

    def set_default_payment_method(self, *, account_id: int, method_id: int) -> None:
        """Метод по умолчанию получает priority 0; у остальных флаг снимается."""
        with self._session() as s, s.begin():
            rec = self._owned_method(s, account_id, method_id)
            self._make_default(s, account_id, rec)

    def update_payment_method_priority(self, *, account_id: int, method_id: int, priority: int) -> None:
        if priority < 0:
            raise ValueError("priority must be >= 0")
        with self._session() as s, s.begin():
            rec = self._owned_method(s, account_id, method_id)
            rec.priority = priority
            rec.updated_at = to_utc_for_db(now_utc())

    def enable_payment_method(self, *, account_id: int, method_id: int) -> None:
        """Ручное включение отключённого метода: статус active, счётчик ошибок с нуля."""
        with self._session() as s, s.begin():
            rec = self._owned_method(s, account_id, method_id)
            rec.status = PaymentMethodStatus.ACTIVE
            rec.failure_count = 0
            rec.updated_at = to_utc_for_db(now_utc())

    def remove_payment_method(self, *, account_id: int, method_id: int) -> None:
        """
        Мягко удаляет метод и отвязывает его от аккаунта, если он был основным.
        """
        with self._session() as s, s.begin():
            rec = self._owned_method(s, account_id, method_id)
            now = to_utc_for_db(now_utc())
            rec.deleted_at = now
            rec.is_default = False
            rec.updated_at = now
            acc = s.get(Account, account_id)
            if acc is not None and acc.primary_payment_method_id == method_id:
                acc.primary_payment_method_id = None
                acc.version = (acc.version or 0) + 1
                acc.updated_at = now

    # ──────────────────────────────────────────────────────────────────────
    # Attempts / revenue
    # ──────────────────────────────────────────────────────────────────────
    def record_billing_attempt(
        self,
        *,
        account_id: int,
        payment_method_id: Optional[int],
        cycle_date: Optional[datetime],
        idempotency_key: str,
        amount_minor: int,
        currency: str,
        outcome: AttemptOutcome,
        decline_reason: Optional[str] = None,
        external_tx_id: Optional[str] = None,
        source: str = "cycle",
        settled_cycle: Optional[str] = None,
        attempted_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Пишет попытку. Для успешной попытки передаётся settled_cycle; если успех
        по этому циклу уже записан, возвращает None (уникальный индекс).
        """
        if settled_cycle is not None and outcome is not AttemptOutcome.SUCCESS:
            raise ValueError("settled_cycle is only allowed for successful attempts")
        try:
            with self._session() as s, s.begin():
                rec = BillingAttempt(
                    account_id=account_id,
                    payment_method_id=payment_method_id,
                    cycle_date=_dt(cycle_date),
                    idempotency_key=idempotency_key,
                    amount_minor=amount_minor,
                    currency=currency,
                    outcome=outcome,
                    decline_reason=decline_reason[:255] if decline_reason else None,
                    external_tx_id=external_tx_id,
                    source=source,
                    settled_cycle=settled_cycle,
                    attempted_at=to_utc_for_db(attempted_at or now_utc()),
                )
                s.add(rec)
                s.flush()
                return rec.id
        except IntegrityError:
            if settled_cycle is None:
                raise
            logger.info("Cycle %s of account %s is already settled; attempt not recorded", settled_cycle, account_id)
            return None

    def find_settled_attempt(self, account_id: int, settled_cycle: str) -> Optional[Dict[str, Any]]:
        with self._session() as s:
            rec = (
                s.query(BillingAttempt)
                 .filter(BillingAttempt.account_id == account_id, BillingAttempt.settled_cycle == settled_cycle)
                 .one_or_none()
            )
            return _attempt_dict(rec) if rec else None

    def list_billing_attempts(self, account_id: int) -> List[Dict[str, Any]]:
        with self._session() as s:
            rows = (
                s.query(BillingAttempt)
                 .filter(BillingAttempt.account_id == account_id)
                 .order_by(BillingAttempt.id.asc())
                 .all()
            )
            return [_attempt_dict(rec) for rec in rows]

    def last_cycle_attempt(self, account_id: int, cycle_key: str) -> Optional[Dict[str, Any]]:
        """Последний вызов шлюза в цикле (ключи вида {cycle_key}-a{n}-...)."""
        with self._session() as s:
            rec = (
                s.query(BillingAttempt)
                 .filter(
                    BillingAttempt.account_id == account_id,
                    BillingAttempt.idempotency_key.like(f"{cycle_key}-a%"),
                 )
                 .order_by(BillingAttempt.id.desc())
                 .first()
            )
            return _attempt_dict(rec) if rec else None

    def record_revenue(
        self,
        *,
        idempotency_key: str,
        account_id: int,
        plan_id: Optional[str],
        amount_minor: int,
        currency: str,
        source: str,
        external_tx_id: Optional[str] = None,
    ) -> bool:
        """True — запись создана, False — по этому ключу выручка уже учтена."""
        try:
            with self._session() as s, s.begin():
                s.add(RevenueRecord(
                    idempotency_key=idempotency_key,
                    account_id=account_id,
                    plan_id=plan_id,
                    amount_minor=amount_minor,
                    currency=currency,
                    context_type="subscription",
                    source=source,
                    external_tx_id=external_tx_id,
                    recorded_at=to_utc_for_db(now_utc()),
                ))
                s.flush()
            return True
        except IntegrityError:
            logger.info("Revenue for key %s already recorded", idempotency_key)
            return False

    def list_revenue(self, account_id: int) -> List[Dict[str, Any]]:
        with self._session() as s:
            rows = (
                s.query(RevenueRecord)
                 .filter(RevenueRecord.account_id == account_id)
                 .order_by(RevenueRecord.id.asc())
                 .all()
            )
            return [
                {
                    "idempotency_key": r.idempotency_key,
                    "plan_id": r.plan_id,
                    "amount_minor": r.amount_minor,
                    "currency": r.currency,
                    "context_type": r.context_type,
                    "source": r.source,
                    "external_tx_id": r.external_tx_id,
                }
                for r in rows
            ]

    # ──────────────────────────────────────────────────────────────────────
    # Events outbox
    # ──────────────────────────────────────────────────────────────────────
    def record_event(self, *, account_id: int, event_type: str, dedupe_key: str, payload_json: Optional[str]) -> bool:
        """True — событие новое, False — уже было (dedupe_key)."""
        try:
            with self._session() as s, s.begin():
                s.add(BillingEvent(
                    dedupe_key=dedupe_key,
                    account_id=account_id,
                    event_type=event_type,
                    payload_json=payload_json,
                    created_at=to_utc_for_db(now_utc()),
                ))
                s.flush()
            return True
        except IntegrityError:
            return False

    def list_events(self, account_id: int) -> List[Dict[str, Any]]:
        with self._session() as s:
            rows = (
                s.query(BillingEvent)
                 .filter(BillingEvent.account_id == account_id)
                 .order_by(BillingEvent.id.asc())
                 .all()
            )
            return [
                {"event_type": r.event_type, "dedupe_key": r.dedupe_key, "payload_json": r.payload_json}
                for r in rows
            ]


# Глобальный репозиторий (billing DB); схему создаёт run.main через init_billing_db()
_repo = BillingRepository(SessionLocal)

# ========= Facade =========
def init_billing_db() -> None:
    init_schema()

def get_repository() -> BillingRepository:
    return _repo

# Scheduler
def accounts_due(now: datetime, limit: int = 200) -> List[int]:
    return _repo.accounts_due(now=now, limit=limit)
