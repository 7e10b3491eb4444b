# donation_billing/billing/utils/gateway.py
"""
Контракт платёжного шлюза и адаптер YooKassa.

Движку нужен только charge(): списать сумму с сохранённого инструмента и
получить однозначный ответ succeeded / declined / error. Ключ идемпотентности
передаётся провайдеру как Idempotence-Key: повтор сетевого вызова с тем же
ключом не создаёт второй платёж.
"""
from __future__ import annotations

import abc
import enum
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from yookassa import Configuration, Payment
from yookassa.domain.exceptions.bad_request_error import BadRequestError
from yookassa.domain.exceptions.forbidden_error import ForbiddenError

from billing.config import (
    GATEWAY_POLL_ATTEMPTS, GATEWAY_POLL_DELAY_SEC, YOUMONEY_SECRET_KEY, YOUMONEY_SHOP_ID,
)

logger = logging.getLogger(__name__)


class ChargeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    ERROR = "error"


# Ошибки, после которых неизвестно, списались ли деньги: провайдер мог провести платёж.
UNKNOWN_OUTCOME_REASONS = ("timeout", "unresolved_status", "gateway_exception")


def is_unknown_outcome(decline_reason: Optional[str]) -> bool:
    """timeout / unresolved_status: pending / gateway_exception: ConnectionError -> True."""
    head = (decline_reason or "").split(":", 1)[0].strip()
    return head in UNKNOWN_OUTCOME_REASONS


@dataclass(frozen=True)
class ChargeResult:
    status: ChargeStatus
    external_tx_id: Optional[str] = None
    decline_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ChargeStatus.SUCCEEDED

    @property
    def outcome_unknown(self) -> bool:
        return self.status is ChargeStatus.ERROR and is_unknown_outcome(self.decline_reason)


class PaymentGateway(abc.ABC):
    @abc.abstractmethod
    def charge(
        self,
        instrument_token: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """Блокирующий вызов. Не бросает на отказах — возвращает ChargeResult."""


def format_amount(amount_minor: int) -> str:
    """2000 -> "20.00" (две цифры после точки — формат YooKassa)."""
    if not isinstance(amount_minor, int) or isinstance(amount_minor, bool):
        raise ValueError(f"Amount must be an integer number of minor units, got: {amount_minor!r}")
    if amount_minor <= 0:
        raise ValueError(f"Amount must be positive, got: {amount_minor}")
    return str((Decimal(amount_minor) / 100).quantize(Decimal("0.01")))


def validate_instrument_token(token: str) -> None:
    if not token or not isinstance(token, str):
        raise ValueError("instrument token cannot be None or empty")
    # Минимальная длина токена (обычно токены YooKassa длиннее)
    if len(token) < 10:
        raise ValueError(f"instrument token seems too short (length: {len(token)})")


class YooKassaGateway(PaymentGateway):
    """
    Повторные списания по сохранённому способу оплаты (payment_method_id YooKassa).
    Платёж в pending опрашиваем несколько раз; если финального статуса нет —
    ERROR, итог позже придёт вебхуком и будет сверен отдельно.
    """

    PENDING_STATUSES = ("pending", "waiting_for_capture")

    def __init__(
        self,
        shop_id: Optional[str] = YOUMONEY_SHOP_ID,
        secret_key: Optional[str] = YOUMONEY_SECRET_KEY,
        *,
        poll_attempts: int = GATEWAY_POLL_ATTEMPTS,
        poll_delay_sec: float = GATEWAY_POLL_DELAY_SEC,
        description: str = "Recurring donation subscription",
    ):
        if shop_id and secret_key:
            Configuration.account_id = shop_id
            Configuration.secret_key = secret_key
        self.poll_attempts = poll_attempts
        self.poll_delay_sec = poll_delay_sec
        self.description = description

    def charge(
        self,
        instrument_token: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        try:
            validate_instrument_token(instrument_token)
            value = format_amount(amount_minor)
        except ValueError as e:
            logger.error("Refusing to charge: %s", e)
            return ChargeResult(ChargeStatus.ERROR, decline_reason=f"invalid_request: {e}")

        md = {"kind": "recurring", "is_recurring": "1", "idempotency_key": idempotency_key}
        if metadata:
            md.update({k: str(v) for k, v in metadata.items()})

        body = {
            "amount": {"value": value, "currency": currency},
            "capture": True,
            "payment_method_id": instrument_token,
            "description": self.description[:128],
            "metadata": md,
        }

        try:
            payment = Payment.create(body, idempotency_key)
        except BadRequestError as e:
            logger.error("BadRequestError creating recurring charge %s: %s", idempotency_key, e)
            return ChargeResult(ChargeStatus.ERROR, decline_reason=f"bad_request: {e}")
        except ForbiddenError as e:
            logger.error("ForbiddenError creating recurring charge %s: %s", idempotency_key, e)
            return ChargeResult(ChargeStatus.ERROR, decline_reason=f"forbidden: {e}")
        except Exception as e:
            logger.exception("Unexpected error creating recurring charge %s: %s", idempotency_key, e)
            return ChargeResult(ChargeStatus.ERROR, decline_reason=f"gateway_exception: {type(e).__name__}")

        status = payment.status
        for _ in range(self.poll_attempts):
            if status not in self.PENDING_STATUSES:
                break
            time.sleep(self.poll_delay_sec)
            try:
                payment = Payment.find_one(payment.id)
                status = payment.status
            except Exception as e:
                logger.warning("Polling payment %s failed: %s", payment.id, e)
        return self._to_result(payment)

    @staticmethod
    def _to_result(payment) -> ChargeResult:
        status = payment.status
        if status == "succeeded":
            return ChargeResult(ChargeStatus.SUCCEEDED, external_tx_id=payment.id)
        if status == "canceled":
            details = getattr(payment, "cancellation_details", None)
            reason = getattr(details, "reason", None) or "canceled"
            return ChargeResult(ChargeStatus.DECLINED, external_tx_id=payment.id, decline_reason=reason)
        logger.error("Payment %s is still %s after polling", payment.id, status)
        return ChargeResult(ChargeStatus.ERROR, external_tx_id=payment.id, decline_reason=f"unresolved_status: {status}")
