# donation_billing/billing/handlers/webhook_handler.py
"""
Приём уведомлений YooKassa о платежах.

Вебхук нужен движку для одного: платёж, результат которого не дождались
синхронно (таймаут шлюза, pending), приходит позже — его надо сверить с
состоянием аккаунта. Всё решение — в BillingOrchestrator.reconcile_payment_event,
здесь только разбор payload, подпись и Redis-идемпотентность.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from billing.config import WEBHOOK_SECRET
from billing.utils.errors import BillingError, ConfigurationError
from billing.utils.orchestrator import PURPOSE_RENEWAL, BillingOrchestrator
from billing.utils.redis_repo import webhook_dedup_repo
from billing.utils.time_helpers import parse_cycle_stamp

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
PENDING_STATUSES = ("pending", "waiting_for_capture")


@dataclass(frozen=True)
class PaymentNotification:
    event: str
    payment_id: str
    status: str
    account_id: int
    cycle: Optional[str] = None
    payment_method_id: Optional[int] = None
    purpose: str = PURPOSE_RENEWAL
    plan_id: Optional[str] = None
    amount_minor: Optional[int] = None
    currency: Optional[str] = None


def _optional_int(value: Any, field: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer, got {value!r}") from None


def _amount_minor(amount: Dict[str, Any]) -> Optional[int]:
    value = amount.get("value")
    if value in (None, ""):
        return None
    try:
        # "20.00" -> 2000
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid amount value {value!r}") from None


def parse_notification(payload: Dict[str, Any]) -> PaymentNotification:
    """Разбирает payload провайдера. Некорректный — ValueError (ответим 400)."""
    if not isinstance(payload, dict):
        raise ValueError("payload must be a JSON object")
    obj = payload.get("object") or {}
    payment_id = obj.get("id")
    status = obj.get("status")
    if not payment_id or not status:
        raise ValueError("missing payment_id/status")

    metadata = obj.get("metadata") or {}
    account_id = _optional_int(metadata.get("account_id"), "account_id")
    if not account_id:
        raise ValueError("missing account_id in metadata")

    cycle = metadata.get("cycle") or None
    if cycle is not None:
        parse_cycle_stamp(cycle)

    amount = obj.get("amount") or {}
    return PaymentNotification(
        event=str(payload.get("event") or ""),
        payment_id=str(payment_id),
        status=str(status).strip().lower(),
        account_id=account_id,
        cycle=cycle,
        payment_method_id=_optional_int(metadata.get("payment_method_id"), "payment_method_id"),
        purpose=str(metadata.get("purpose") or PURPOSE_RENEWAL),
        plan_id=metadata.get("plan_id") or None,
        amount_minor=_amount_minor(amount),
        currency=amount.get("currency") or None,
    )


def sign_body(raw_body: bytes, secret: str) -> str:
    return "v1=" + hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, header: Optional[str], secret: str = WEBHOOK_SECRET) -> bool:
    """Без секрета проверка выключена (dev); с секретом — HMAC-SHA256 тела, формат v1=<hex>."""
    if not secret:
        return True
    if not header:
        return False
    return hmac.compare_digest(sign_body(raw_body, secret), header.strip())


async def process_payment_webhook(
    orchestrator: BillingOrchestrator,
    payload: Dict[str, Any],
    *,
    raw_body: bytes = b"",
    signature: Optional[str] = None,
    secret: str = WEBHOOK_SECRET,
    dedup=None,
) -> Tuple[int, str]:
    dedup = dedup or webhook_dedup_repo

    if not verify_signature(raw_body, signature, secret):
        logger.warning("Webhook rejected: bad signature")
        return 401, "bad signature"

    try:
        note = parse_notification(payload)
    except ValueError as e:
        logger.warning("Webhook rejected: %s", e)
        return 400, str(e)

    # промежуточный статус: фиксируем и без побочек выходим
    if note.status in PENDING_STATUSES:
        await dedup.should_process(note.payment_id, note.status)
        return 200, f"ack {note.status}"

    if not await dedup.should_process(note.payment_id, note.status):
        return 200, f"duplicate/no-op status={note.status}"

    try:
        result = await asyncio.to_thread(
            orchestrator.reconcile_payment_event,
            account_id=note.account_id,
            status=note.status,
            external_tx_id=note.payment_id,
            cycle=note.cycle,
            payment_method_id=note.payment_method_id,
            amount_minor=note.amount_minor,
            currency=note.currency,
            purpose=note.purpose,
            plan_id=note.plan_id,
        )
    except ConfigurationError as e:
        await dedup.forget(note.payment_id)
        logger.error("Webhook %s for account %s: %s", note.payment_id, note.account_id, e)
        return 400, str(e)
    except BillingError as e:
        # аккаунт занят/изменился параллельно — пусть провайдер пришлёт повторно
        await dedup.forget(note.payment_id)
        logger.warning("Webhook %s deferred: %s", note.payment_id, e)
        return 500, "retry later"
    except Exception:
        await dedup.forget(note.payment_id)
        raise

    logger.info("Webhook %s (%s) for account %s: %s (%s)",
                note.payment_id, note.status, note.account_id, result.outcome.value, result.detail)
    return 200, f"{result.outcome.value}: {result.detail}"
