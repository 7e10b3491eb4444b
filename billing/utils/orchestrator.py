# donation_billing/billing/utils/orchestrator.py
"""
Оркестратор биллинга: единственное место, где чистые блоки (резолвер,
планировщик ретраев, машина состояний) встречаются с БД и шлюзом.

Все операции над одним аккаунтом идут под локом account_id (в процессе —
KeyedLock, между процессами — опциональный RedisAccountLock). Отказы карт и
сбои шлюза — не исключения: run_cycle возвращает CycleResult. Исключения —
только для конфигурации (нет аккаунта/тарифа) и недопустимых переходов.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from billing.config import BILLING_SWEEP_LIMIT, GATEWAY_TIMEOUT_SEC
from billing.utils.domain import (
    AccountRecord, AttemptOutcome, CycleOutcome, EventType, PaymentMethodRecord,
    PlanRecord, ReconcileOutcome, SubscriptionStatus,
)
from billing.utils.errors import (
    AccountNotFound, BillingError, InvalidTransition, PlanNotFound, StaleStateError,
)
from billing.utils.fallback_resolver import FallbackResolver
from billing.utils.gateway import ChargeResult, ChargeStatus, PaymentGateway, is_unknown_outcome
from billing.utils.locks import KeyedLock
from billing.utils.notification import OutboxNotifier
from billing.utils.retry_scheduler import RetryScheduler
from billing.utils.state_machine import BillingState, BillingStateMachine, Transition, Trigger
from billing.utils.time_helpers import cycle_stamp, iso_str, now_utc, parse_cycle_stamp, to_aware_utc

logger = logging.getLogger(__name__)

S = SubscriptionStatus

PURPOSE_START = "start"
PURPOSE_RENEWAL = "renewal"


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    detail: str
    account_id: int
    status: Optional[SubscriptionStatus] = None
    gateway_calls: int = 0
    payment_method_id: Optional[int] = None
    external_tx_id: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    events: Tuple[EventType, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "detail": self.detail,
            "account_id": self.account_id,
            "status": self.status.value if self.status else None,
            "gateway_calls": self.gateway_calls,
            "payment_method_id": self.payment_method_id,
            "external_tx_id": self.external_tx_id,
            "next_billing_date": iso_str(self.next_billing_date) if self.next_billing_date else None,
            "next_retry_at": iso_str(self.next_retry_at) if self.next_retry_at else None,
            "events": [e.value for e in self.events],
        }


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    detail: str
    account_id: int
    status: Optional[SubscriptionStatus] = None


def cycle_key(account_id: int, cycle_date: datetime) -> str:
    """Ключ идемпотентности цикла: acct-42-20261019T000000Z."""
    return f"acct-{account_id}-{cycle_stamp(cycle_date)}"


class BillingOrchestrator:
    def __init__(
        self,
        repo,
        gateway: PaymentGateway,
        *,
        notifier=None,
        resolver: Optional[FallbackResolver] = None,
        scheduler: Optional[RetryScheduler] = None,
        state_machine: Optional[BillingStateMachine] = None,
        account_lock=None,
        clock: Callable[[], datetime] = now_utc,
        gateway_timeout: float = GATEWAY_TIMEOUT_SEC,
        gateway_workers: int = 8,
    ):
        self.repo = repo
        self.gateway = gateway
        self.notifier = notifier or OutboxNotifier(repo)
        self.resolver = resolver or FallbackResolver(repo, notifier=self.notifier)
        self.scheduler = scheduler or RetryScheduler()
        self.sm = state_machine or BillingStateMachine()
        self.account_lock = account_lock
        self.clock = clock
        self.gateway_timeout = gateway_timeout
        self._locks = KeyedLock()
        self._executor = ThreadPoolExecutor(max_workers=gateway_workers, thread_name_prefix="gateway")

    def close(self) -> None:
        # зависшие вызовы шлюза не отменяем — просто не ждём их
        self._executor.shutdown(wait=False)

    # ──────────────────────────────────────────────────────────────────────
    # Инфраструктура
    # ──────────────────────────────────────────────────────────────────────
    @contextmanager
    def _locked(self, account_id: int) -> Iterator[None]:
        with self._locks.hold(account_id):
            if self.account_lock is None:
                yield
            else:
                with self.account_lock.hold(account_id):
                    yield

    def _keep_lock(self, account_id: int) -> None:
        # каждый вызов шлюза может занять gateway_timeout — продлеваем межпроцессный лок заранее
        if self.account_lock is not None:
            self.account_lock.extend(account_id)

    def _now(self) -> datetime:
        return to_aware_utc(self.clock())

    def _load(self, account_id: int) -> AccountRecord:
        account = self.repo.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def _plan(self, account_id: int, plan_id: Optional[str]) -> PlanRecord:
        plan = self.repo.get_plan(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id, account_id)
        return plan

    def _charge(self, method: PaymentMethodRecord, amount_minor: int, currency: str,
                idempotency_key: str, metadata: Dict[str, str]) -> ChargeResult:
        future = self._executor.submit(
            self.gateway.charge, method.provider_instrument_id, amount_minor, currency, idempotency_key, metadata,
        )
        try:
            return future.result(timeout=self.gateway_timeout)
        except FutureTimeout:
            logger.error("Gateway timeout after %.1fs (key=%s, method=%s)", self.gateway_timeout, idempotency_key, method.id)
            return ChargeResult(ChargeStatus.ERROR, decline_reason="timeout")
        except Exception as e:
            logger.exception("Gateway call failed (key=%s, method=%s): %s", idempotency_key, method.id, e)
            return ChargeResult(ChargeStatus.ERROR, decline_reason=f"gateway_exception: {type(e).__name__}")

    def _commit(self, account: AccountRecord, make: Callable[[BillingState], Transition]) -> Tuple[Transition, AccountRecord]:
        """
        Применяет переход с проверкой version. Если аккаунт успели изменить
        (админка, соседний процесс), перечитываем и строим переход заново — один раз.
        """
        try:
            return self._apply(account, make)
        except StaleStateError:
            logger.warning("Account %s changed concurrently, re-reading", account.id)
            return self._apply(self._load(account.id), make)

    def _apply(self, account: AccountRecord, make: Callable[[BillingState], Transition]) -> Tuple[Transition, AccountRecord]:
        transition = make(BillingState.from_account(account))
        if not transition.changed:
            return transition, account
        updated = self.repo.update_account(account.id, transition.patch(), expected_version=account.version)
        return transition, updated

    def _emit(self, account: AccountRecord, events, key_prefix: str, **payload) -> None:
        if not events:
            return
        payload.setdefault("status", account.subscription_status.value)
        payload.setdefault("tier", account.subscription_tier)
        self.notifier.emit_many(account.id, events, key_prefix=key_prefix, payload=payload)

    # ──────────────────────────────────────────────────────────────────────
    # Перебор кандидатов в пределах одного цикла
    # ──────────────────────────────────────────────────────────────────────
    def _resume_point(self, account_id: int, key: str) -> Optional[Tuple[int, str]]:
        """
        Если последний вызов шлюза в цикле закончился неизвестным итогом, повтор идёт
        тем же методом и с тем же ключом: провайдер вернёт исход исходного платежа.
        """
        last = self.repo.last_cycle_attempt(account_id, key)
        if last is None or last["payment_method_id"] is None:
            return None
        if last["outcome"] is not AttemptOutcome.GATEWAY_ERROR or not is_unknown_outcome(last["decline_reason"]):
            return None
        return last["payment_method_id"], last["idempotency_key"]

    def _try_candidates(
        self,
        *,
        account: AccountRecord,
        plan: PlanRecord,
        candidates: List[PaymentMethodRecord],
        cycle_date: datetime,
        key: str,
        attempt_no: int,
        amount_minor: int,
        currency: str,
        purpose: str,
        now: datetime,
        resume: Optional[Tuple[int, str]] = None,
    ) -> Tuple[Optional[PaymentMethodRecord], Optional[ChargeResult], int, Optional[str]]:
        """
        Каждый метод — не больше одного раза за цикл. Возвращает (метод, результат,
        число вызовов, ключ успешного вызова). К следующему методу переходим только
        после однозначного отказа: при неизвестном итоге цикл считается неудачным.
        """
        if not candidates:
            logger.warning("Account %s has no eligible payment methods for cycle %s", account.id, key)
            self.repo.record_billing_attempt(
                account_id=account.id, payment_method_id=None, cycle_date=cycle_date,
                idempotency_key=f"{key}-a{attempt_no}-none", amount_minor=amount_minor, currency=currency,
                outcome=AttemptOutcome.DECLINED, decline_reason="no_eligible_payment_method", attempted_at=now,
            )
            return None, None, 0, None

        resume_keys: Dict[int, str] = {}
        if resume is not None:
            method_id, resume_key = resume
            if any(m.id == method_id for m in candidates):
                resume_keys[method_id] = resume_key
                candidates = sorted(candidates, key=lambda m: m.id != method_id)
            else:
                logger.warning("Account %s: method %s with unresolved charge %s is no longer eligible",
                               account.id, method_id, resume_key)

        calls = 0
        for method in candidates:
            call_key = resume_keys.get(method.id) or f"{key}-a{attempt_no}-pm{method.id}"
            metadata = {
                "account_id": str(account.id),
                "cycle": cycle_stamp(cycle_date),
                "payment_method_id": str(method.id),
                "plan_id": plan.id,
                "purpose": purpose,
            }
            self._keep_lock(account.id)
            result = self._charge(method, amount_minor, currency, call_key, metadata)
            calls += 1
            if result.succeeded:
                logger.info("Account %s charged %s %s via %s (tx=%s)",
                            account.id, amount_minor, currency, method.label, result.external_tx_id)
                return method, result, calls, call_key

            outcome = AttemptOutcome.DECLINED if result.status is ChargeStatus.DECLINED else AttemptOutcome.GATEWAY_ERROR
            self.repo.record_billing_attempt(
                account_id=account.id, payment_method_id=method.id, cycle_date=cycle_date,
                idempotency_key=call_key, amount_minor=amount_minor, currency=currency,
                outcome=outcome, decline_reason=result.decline_reason,
                external_tx_id=result.external_tx_id, attempted_at=now,
            )
            if result.outcome_unknown:
                # платёж мог пройти: другой метод в этом цикле не трогаем, метод не штрафуем
                logger.error("Account %s: outcome unknown on %s (%s), fallback stopped until retry with key %s",
                             account.id, method.label, result.decline_reason, call_key)
                return None, None, calls, None
            if outcome is AttemptOutcome.DECLINED:
                logger.warning("Account %s: %s declined (%s)", account.id, method.label, result.decline_reason)
            else:
                logger.error("Account %s: gateway error on %s (%s)", account.id, method.label, result.decline_reason)
            self.resolver.record_failure(method, now=now, reason=result.decline_reason)
        return None, None, calls, None

    def _record_success(
        self,
        *,
        account: AccountRecord,
        plan_id: Optional[str],
        method_id: Optional[int],
        cycle_date: datetime,
        key: str,
        idempotency_key: str,
        amount_minor: int,
        currency: str,
        external_tx_id: Optional[str],
        revenue_source: str,
        source: str,
        now: datetime,
    ) -> bool:
        """Попытка + выручка + учёт метода. False — успех по этому циклу уже был записан."""
        attempt_id = self.repo.record_billing_attempt(
            account_id=account.id, payment_method_id=method_id, cycle_date=cycle_date,
            idempotency_key=idempotency_key, amount_minor=amount_minor, currency=currency,
            outcome=AttemptOutcome.SUCCESS, external_tx_id=external_tx_id, source=source,
            settled_cycle=cycle_stamp(cycle_date), attempted_at=now,
        )
        # выручка — строго одна на ключ цикла, даже если попытку уже записали раньше
        self.repo.record_revenue(
            idempotency_key=key, account_id=account.id, plan_id=plan_id,
            amount_minor=amount_minor, currency=currency, source=revenue_source,
            external_tx_id=external_tx_id,
        )
        if attempt_id is None:
            return False
        if method_id is not None:
            method = self.repo.get_payment_method(method_id)
            if method is not None and method.account_id == account.id:
                self.resolver.record_success(method, now=now)
        return True

    # ──────────────────────────────────────────────────────────────────────
    # Цикл списания
    # ──────────────────────────────────────────────────────────────────────
    def run_cycle(self, account_id: int) -> CycleResult:
        """
        Один биллинговый цикл. Безопасно вызывать чаще, чем нужно:
        если списывать ещё рано — not_due без изменений.
        """
        with self._locked(account_id):
            account = self._load(account_id)
            now = self._now()

            if account.subscription_status in (S.CANCELED, S.INACTIVE):
                logger.debug("Account %s skipped: billing stopped (%s)", account_id, account.subscription_status.value)
                return CycleResult(CycleOutcome.NOT_DUE, f"billing stopped: {account.subscription_status.value}",
                                   account_id, status=account.subscription_status)
            due_at = account.charge_due_at
            if due_at is None:
                return CycleResult(CycleOutcome.NOT_DUE, "no billing date", account_id, status=account.subscription_status)
            if due_at > now:
                logger.debug("Account %s not due until %s", account_id, iso_str(due_at))
                return CycleResult(CycleOutcome.NOT_DUE, f"not due until {iso_str(due_at)}", account_id,
                                   status=account.subscription_status, next_billing_date=account.next_billing_date,
                                   next_retry_at=account.next_retry_date)

            plan = self._plan(account_id, account.plan_id)
            cycle_date = account.next_billing_date or due_at
            key = cycle_key(account_id, cycle_date)
            amount_minor = account.amount_minor or plan.amount_minor
            currency = account.currency or plan.currency

            settled = self.repo.find_settled_attempt(account_id, cycle_stamp(cycle_date))
            if settled is not None:
                # оплату цикла уже записали (вебхук или прерванный прогон) — доводим состояние
                logger.info("Account %s cycle %s already settled (tx=%s)", account_id, key, settled["external_tx_id"])
                return self._finish_success(
                    account, plan, settled["payment_method_id"], settled["external_tx_id"], cycle_date, now,
                    detail="cycle already settled", calls=0,
                )

            candidates = self.resolver.resolve(account_id)
            attempt_no = account.failed_attempts + 1
            method, result, calls, call_key = self._try_candidates(
                account=account, plan=plan, candidates=candidates, cycle_date=cycle_date, key=key,
                attempt_no=attempt_no, amount_minor=amount_minor, currency=currency,
                purpose=PURPOSE_RENEWAL, now=now, resume=self._resume_point(account_id, key),
            )

            if method is not None:
                self._record_success(
                    account=account, plan_id=plan.id, method_id=method.id, cycle_date=cycle_date, key=key,
                    idempotency_key=call_key, amount_minor=amount_minor,
                    currency=currency, external_tx_id=result.external_tx_id,
                    revenue_source="subscription_renewal", source="cycle", now=now,
                )
                return self._finish_success(account, plan, method.id, result.external_tx_id, cycle_date, now,
                                            detail=f"charged via {method.label}", calls=calls)

            return self._finish_failure(account, key, now, calls=calls, had_candidates=bool(candidates))

    def _finish_success(self, account: AccountRecord, plan: PlanRecord, method_id: Optional[int],
                        external_tx_id: Optional[str], cycle_date: datetime, now: datetime, *,
                        detail: str, calls: int) -> CycleResult:
        settled_cycle = cycle_stamp(cycle_date)

        def make(state: BillingState) -> Transition:
            # соседний писатель уже продвинул цикл — повторно не двигаем
            if state.status is S.ACTIVE and state.next_billing_date is not None \
                    and cycle_stamp(state.next_billing_date) != settled_cycle:
                return Transition(Trigger.CHARGE_SUCCEEDED, state, state)
            return self.sm.on_charge_success(state, plan=plan, now=now, payment_method_id=method_id)

        transition, account = self._commit(account, make)
        self._emit(account, transition.events, cycle_key(account.id, cycle_date), cycle=settled_cycle,
                   external_tx_id=external_tx_id, next_billing_date=account.next_billing_date)
        return CycleResult(
            CycleOutcome.SUCCESS, detail, account.id, status=account.subscription_status, gateway_calls=calls,
            payment_method_id=method_id, external_tx_id=external_tx_id,
            next_billing_date=account.next_billing_date, events=transition.events,
        )

    def _finish_failure(self, account: AccountRecord, key: str, now: datetime, *,
                        calls: int, had_candidates: bool) -> CycleResult:
        decision_box = {}
        seen_attempts, seen_cycle = account.failed_attempts, account.next_billing_date

        def make(state: BillingState) -> Transition:
            decision_box.clear()
            # попытку, на которой основан этот прогон, уже учёл другой воркер
            if state.failed_attempts != seen_attempts or state.next_billing_date != seen_cycle:
                return Transition(Trigger.CHARGE_FAILED, state, state)
            decision = self.scheduler.on_failure(
                failed_attempts=state.failed_attempts, now=now,
                first_failure_at=state.first_failure_at, grace_period_ends_at=state.grace_period_ends_at,
            )
            decision_box["decision"] = decision
            return self.sm.on_charge_failure(state, decision=decision, now=now)

        transition, account = self._commit(account, make)
        decision = decision_box.get("decision")
        if decision is None:
            logger.warning("Account %s: attempt %s of cycle %s was already recorded concurrently",
                           account.id, seen_attempts + 1, key)
            outcome = {S.CANCELED: CycleOutcome.FAILED_FINAL, S.PAST_DUE: CycleOutcome.RETRY_SCHEDULED}.get(
                account.subscription_status, CycleOutcome.NOT_DUE)
            return CycleResult(outcome, "attempt already recorded concurrently", account.id,
                               status=account.subscription_status, gateway_calls=calls,
                               next_billing_date=account.next_billing_date, next_retry_at=account.next_retry_date)
        reason = "all payment methods failed" if had_candidates else "no eligible payment methods"
        self._emit(account, transition.events, f"{key}:f{decision.attempt_number}",
                   failed_attempts=decision.attempt_number, reason=reason,
                   grace_period_ends_at=decision.grace_period_ends_at, next_retry_at=decision.next_retry_at)

        if decision.is_final:
            logger.warning("Account %s canceled after %s failed attempts (%s)", account.id, decision.attempt_number, reason)
            return CycleResult(CycleOutcome.FAILED_FINAL, f"{reason}; attempts exhausted", account.id,
                               status=account.subscription_status, gateway_calls=calls, events=transition.events)
        logger.info("Account %s past due: attempt %s/%s failed, next retry at %s",
                    account.id, decision.attempt_number, self.scheduler.max_attempts, iso_str(decision.next_retry_at))
        return CycleResult(CycleOutcome.RETRY_SCHEDULED, f"{reason}; retry at {iso_str(decision.next_retry_at)}",
                           account.id, status=account.subscription_status, gateway_calls=calls,
                           next_billing_date=account.next_billing_date, next_retry_at=decision.next_retry_at,
                           events=transition.events)

    def run_due(self, *, limit: int = BILLING_SWEEP_LIMIT, now: Optional[datetime] = None) -> List[CycleResult]:
        """Синхронный проход по всем аккаунтам, которым пора платить (CLI/админка/тесты)."""
        now = to_aware_utc(now) if now else self._now()
        results: List[CycleResult] = []
        for account_id in self.repo.accounts_due(now=now, limit=limit):
            try:
                results.append(self.run_cycle(account_id))
            except BillingError as e:
                logger.error("Billing cycle for account %s failed: %s", account_id, e)
        return results

    # ──────────────────────────────────────────────────────────────────────
    # Старт / отмена / реактивация
    # ──────────────────────────────────────────────────────────────────────
    def start_subscription(self, account_id: int, plan_id: str, *,
                           preferred_method_id: Optional[int] = None) -> CycleResult:
        """Тариф с триалом — trialing без списания; иначе — первичное списание с фолбэком."""
        with self._locked(account_id):
            account = self._load(account_id)
            plan = self._plan(account_id, plan_id)
            if not plan.is_active:
                raise PlanNotFound(plan_id, account_id)
            if account.subscription_status is not S.INACTIVE:
                raise InvalidTransition(account.subscription_status, "start")
            now = self._now()

            if plan.trial_days > 0:
                transition, account = self._commit(account, lambda st: self.sm.start_trial(st, plan=plan, now=now))
                self._emit(account, transition.events, f"acct-{account_id}-trial-{cycle_stamp(now)}",
                           plan_id=plan.id, trial_ends_at=account.next_billing_date)
                return CycleResult(CycleOutcome.SUCCESS, f"trial until {iso_str(account.next_billing_date)}",
                                   account_id, status=account.subscription_status,
                                   next_billing_date=account.next_billing_date, events=transition.events)

            return self._initial_charge(account, plan, preferred_method_id, now, reactivation=False)

    def reactivate_subscription(self, account_id: int, plan_id: Optional[str] = None, *,
                                preferred_method_id: Optional[int] = None) -> CycleResult:
        """
        Отменённая подписка не «размораживается»: создаётся новая (новое первичное
        списание, новый якорь цикла). Пока списание не прошло — в БД ничего не меняется.
        """
        with self._locked(account_id):
            account = self._load(account_id)
            plan = self._plan(account_id, plan_id or account.plan_id)
            if not plan.is_active:
                raise PlanNotFound(plan.id, account_id)
            if account.subscription_status not in (S.CANCELED, S.INACTIVE):
                raise InvalidTransition(account.subscription_status, "reactivate")
            return self._initial_charge(account, plan, preferred_method_id, self._now(),
                                        reactivation=account.subscription_status is S.CANCELED)

    def _initial_charge(self, account: AccountRecord, plan: PlanRecord, preferred_method_id: Optional[int],
                        now: datetime, *, reactivation: bool) -> CycleResult:
        key = cycle_key(account.id, now)
        candidates = self.resolver.resolve(account.id, preferred_method_id=preferred_method_id)
        method, result, calls, call_key = self._try_candidates(
            account=account, plan=plan, candidates=candidates, cycle_date=now, key=key, attempt_no=1,
            amount_minor=plan.amount_minor, currency=plan.currency, purpose=PURPOSE_START, now=now,
        )
        if method is None:
            failed = self.sm.on_charge_failure(self.sm.reactivate(BillingState.from_account(account), plan=plan).state,
                                               decision=None, now=now)
            self._emit(account, failed.events, f"{key}:initial", plan_id=plan.id,
                       reason="no eligible payment methods" if not candidates else "all payment methods failed")
            logger.warning("Account %s: initial charge for plan %s failed, subscription not started", account.id, plan.id)
            return CycleResult(CycleOutcome.FAILED_FINAL, "initial charge failed; subscription not started",
                               account.id, status=account.subscription_status, gateway_calls=calls,
                               events=failed.events)

        self._record_success(
            account=account, plan_id=plan.id, method_id=method.id, cycle_date=now, key=key,
            idempotency_key=call_key, amount_minor=plan.amount_minor, currency=plan.currency,
            external_tx_id=result.external_tx_id, revenue_source="subscription_start", source="cycle", now=now,
        )
        return self._finish_initial(account, plan, method.id, result.external_tx_id, key, now,
                                    reactivation=reactivation, calls=calls)

    def _finish_initial(self, account: AccountRecord, plan: PlanRecord, method_id: Optional[int],
                        external_tx_id: Optional[str], key: str, now: datetime, *,
                        reactivation: bool, calls: int) -> CycleResult:
        def make(state: BillingState) -> Transition:
            prepared = self.sm.reactivate(state, plan=plan).state
            return self.sm.on_charge_success(prepared, plan=plan, now=now, payment_method_id=method_id)

        transition, account = self._commit(account, make)
        events = transition.events + ((EventType.REACTIVATED,) if reactivation else ())
        self._emit(account, events, key, plan_id=plan.id, external_tx_id=external_tx_id,
                   next_billing_date=account.next_billing_date)
        return CycleResult(CycleOutcome.SUCCESS, "subscription reactivated" if reactivation else "subscription started",
                           account.id, status=account.subscription_status, gateway_calls=calls,
                           payment_method_id=method_id, external_tx_id=external_tx_id,
                           next_billing_date=account.next_billing_date, events=events)

    def cancel_subscription(self, account_id: int, reason: Optional[str] = None) -> AccountRecord:
        """Немедленная отмена из любого состояния; настройки аккаунта сохраняются."""
        with self._locked(account_id):
            account = self._load(account_id)
            now = self._now()
            transition, account = self._commit(account, lambda st: self.sm.cancel(st, now=now, reason=reason))
            if transition.changed:
                logger.info("Account %s canceled by request (%s)", account_id, reason)
                self._emit(account, transition.events, f"acct-{account_id}-cancel-{cycle_stamp(now)}",
                           reason=account.cancel_reason)
            return account

    def has_access(self, account_id: int) -> bool:
        account = self._load(account_id)
        return self.sm.has_access(BillingState.from_account(account), self._now())

    # ──────────────────────────────────────────────────────────────────────
    # Сверка с вебхуками провайдера
    # ──────────────────────────────────────────────────────────────────────
    def reconcile_payment_event(
        self,
        *,
        account_id: int,
        status: str,
        external_tx_id: Optional[str],
        cycle: Optional[str] = None,
        payment_method_id: Optional[int] = None,
        amount_minor: Optional[int] = None,
        currency: Optional[str] = None,
        purpose: str = PURPOSE_RENEWAL,
        plan_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Успех, пришедший вебхуком (например, после таймаута шлюза):
          - цикл уже закрыт -> duplicate;
          - past_due/active/trialing, текущий цикл -> закрываем цикл (past_due -> active);
          - canceled + продление -> платёж учитываем, но подписку не возобновляем:
            нужна явная реактивация (событие payment_after_cancellation);
          - первичное списание (purpose=start) для inactive/canceled -> старт подписки.
        Неуспешные статусы состояние не меняют: неудача уже учтена run_cycle.
        """
        if status != "succeeded":
            logger.info("Webhook for account %s: status %s (tx=%s) ignored", account_id, status, external_tx_id)
            return ReconcileResult(ReconcileOutcome.IGNORED, f"status {status} does not change billing state", account_id)

        with self._locked(account_id):
            account = self._load(account_id)
            now = self._now()
            current = account.next_billing_date
            cycle = cycle or (cycle_stamp(current) if current else None)
            if cycle is None:
                return ReconcileResult(ReconcileOutcome.IGNORED, "no cycle to reconcile", account_id,
                                       status=account.subscription_status)
            cycle_date = parse_cycle_stamp(cycle)
            key = cycle_key(account_id, cycle_date)
            wh_key = f"{key}-wh-{external_tx_id}"

            if self.repo.find_settled_attempt(account_id, cycle) is not None:
                logger.info("Webhook for account %s cycle %s: already settled", account_id, cycle)
                return ReconcileResult(ReconcileOutcome.DUPLICATE, "cycle already settled", account_id,
                                       status=account.subscription_status)

            if purpose == PURPOSE_START and account.subscription_status in (S.INACTIVE, S.CANCELED):
                # первичное списание, ответ на которое не дождались синхронно
                plan = self._plan(account_id, plan_id or account.plan_id)
                self._record_success(
                    account=account, plan_id=plan.id, method_id=payment_method_id, cycle_date=cycle_date, key=key,
                    idempotency_key=wh_key, amount_minor=amount_minor or plan.amount_minor,
                    currency=currency or plan.currency, external_tx_id=external_tx_id,
                    revenue_source="subscription_start", source="webhook", now=now,
                )
                result = self._finish_initial(account, plan, payment_method_id, external_tx_id, key, now,
                                              reactivation=account.subscription_status is S.CANCELED, calls=0)
                return ReconcileResult(ReconcileOutcome.APPLIED, result.detail, account_id, status=result.status)

            if account.subscription_status in (S.CANCELED, S.INACTIVE):
                self._record_success(
                    account=account, plan_id=account.plan_id, method_id=payment_method_id, cycle_date=cycle_date,
                    key=key, idempotency_key=wh_key, amount_minor=amount_minor or account.amount_minor or 0,
                    currency=currency or account.currency or "", external_tx_id=external_tx_id,
                    revenue_source="late_payment", source="webhook", now=now,
                )
                logger.warning("Account %s: payment %s arrived after cancellation; explicit reactivation required",
                               account_id, external_tx_id)
                self._emit(account, (EventType.PAYMENT_AFTER_CANCELLATION,), f"{key}:late",
                           external_tx_id=external_tx_id, amount_minor=amount_minor, currency=currency)
                return ReconcileResult(ReconcileOutcome.RECORDED_ONLY, "payment after cancellation recorded",
                                       account_id, status=account.subscription_status)

            plan = self._plan(account_id, account.plan_id)
            is_current = current is not None and cycle_stamp(current) == cycle
            self._record_success(
                account=account, plan_id=plan.id, method_id=payment_method_id, cycle_date=cycle_date,
                key=key, idempotency_key=wh_key,
                amount_minor=amount_minor or account.amount_minor or plan.amount_minor,
                currency=currency or account.currency or plan.currency, external_tx_id=external_tx_id,
                revenue_source="subscription_renewal" if is_current else "late_payment",
                source="webhook", now=now,
            )
            if not is_current:
                logger.warning("Account %s: payment %s for stale cycle %s recorded without state change",
                               account_id, external_tx_id, cycle)
                return ReconcileResult(ReconcileOutcome.RECORDED_ONLY, "stale cycle payment recorded", account_id,
                                       status=account.subscription_status)

            result = self._finish_success(account, plan, payment_method_id, external_tx_id, cycle_date, now,
                                          detail="settled by webhook", calls=0)
            return ReconcileResult(ReconcileOutcome.APPLIED, result.detail, account_id, status=result.status)
