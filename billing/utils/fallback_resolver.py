# donation_billing/billing/utils/fallback_resolver.py
"""
Выбор платёжных методов для списания.

resolve() отдаёт упорядоченный список пригодных методов аккаунта:
  status == active, не удалён, failure_count < MAX_METHOD_FAILURES.
Порядок: priority ↑, is_default первым, last_success_at ↓ (без успехов — в конце),
created_at ↑, id ↑ — полностью детерминирован.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from billing.config import MAX_METHOD_FAILURES
from billing.utils.domain import EventType, PaymentMethodRecord, PaymentMethodStatus
from billing.utils.time_helpers import now_utc

logger = logging.getLogger(__name__)

_NEVER = float("inf")


def is_eligible(method: PaymentMethodRecord, max_failures: int = MAX_METHOD_FAILURES) -> bool:
    return (
        method.status is PaymentMethodStatus.ACTIVE
        and method.deleted_at is None
        and method.failure_count < max_failures
    )


def _sort_key(method: PaymentMethodRecord):
    # last_success_at по убыванию: берём отрицательный timestamp, None — в самый конец
    success_rank = -method.last_success_at.timestamp() if method.last_success_at else _NEVER
    created_rank = method.created_at.timestamp() if method.created_at else _NEVER
    return (
        method.priority,
        0 if method.is_default else 1,
        success_rank,
        created_rank,
        method.id,
    )


def rank_methods(methods: List[PaymentMethodRecord], max_failures: int = MAX_METHOD_FAILURES) -> List[PaymentMethodRecord]:
    return sorted((m for m in methods if is_eligible(m, max_failures)), key=_sort_key)


class FallbackResolver:
    def __init__(self, repo, *, notifier=None, max_failures: int = MAX_METHOD_FAILURES):
        self.repo = repo
        self.notifier = notifier
        self.max_failures = max_failures

    def resolve(self, account_id: int, *, preferred_method_id: Optional[int] = None) -> List[PaymentMethodRecord]:
        """
        preferred_method_id (например, карта, выбранная при старте подписки) ставится
        первым, если он пригоден; остальной порядок не меняется.
        """
        ranked = rank_methods(self.repo.list_payment_methods(account_id), self.max_failures)
        if preferred_method_id is not None:
            preferred = [m for m in ranked if m.id == preferred_method_id]
            ranked = preferred + [m for m in ranked if m.id != preferred_method_id]
        logger.debug("Account %s candidates: %s", account_id, [m.label for m in ranked])
        return ranked

    def record_failure(self, method: PaymentMethodRecord, *, now: Optional[datetime] = None,
                       reason: Optional[str] = None) -> PaymentMethodRecord:
        now = now or now_utc()
        updated = self.repo.record_method_failure(method.id, now=now, disable_at=self.max_failures)
        if updated.status is PaymentMethodStatus.DISABLED and method.status is not PaymentMethodStatus.DISABLED:
            logger.warning(
                "Payment method %s (%s) of account %s disabled after %s failures",
                updated.id, updated.label, updated.account_id, updated.failure_count,
            )
            if self.notifier is not None:
                self.notifier.emit(
                    updated.account_id,
                    EventType.PAYMENT_METHOD_DISABLED,
                    dedupe_key=f"pm-disabled-{updated.id}-{updated.failure_count}-{int(now.timestamp())}",
                    payload={"payment_method_id": updated.id, "label": updated.label, "reason": reason},
                )
        return updated

    def record_success(self, method: PaymentMethodRecord, *, now: Optional[datetime] = None) -> PaymentMethodRecord:
        """Сбрасывает счётчик только этому методу; статус других не трогаем."""
        return self.repo.record_method_success(method.id, now=now or now_utc())
