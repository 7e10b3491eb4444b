# donation_billing/billing/utils/errors.py
"""
Исключения биллингового движка.

Отказ карты и сбои шлюза исключениями НЕ являются — run_cycle возвращает их
как CycleResult. Исключения поднимаются только для ошибок конфигурации и
нарушений инвариантов состояния.
"""
from __future__ import annotations


class BillingError(Exception):
    """Базовое исключение биллинга."""


class ConfigurationError(BillingError):
    """Фатальная ошибка конфигурации: попытка не расходуется, состояние не меняется."""


class AccountNotFound(ConfigurationError):
    def __init__(self, account_id: int):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class PlanNotFound(ConfigurationError):
    def __init__(self, plan_id: str | None, account_id: int | None = None):
        super().__init__(f"Plan not found: {plan_id!r} (account={account_id})")
        self.plan_id = plan_id
        self.account_id = account_id


class InvalidTransition(BillingError):
    def __init__(self, status, trigger: str):
        super().__init__(f"Transition {trigger!r} is not allowed from status {getattr(status, 'value', status)!r}")
        self.status = status
        self.trigger = trigger


class StaleStateError(BillingError):
    """Аккаунт изменился параллельно (не совпала версия)."""

    def __init__(self, account_id: int, expected_version: int):
        super().__init__(f"Account {account_id} changed concurrently (expected version {expected_version})")
        self.account_id = account_id
        self.expected_version = expected_version


class PaymentMethodError(BillingError):
    pass


class PaymentMethodNotFound(PaymentMethodError):
    def __init__(self, method_id: int, account_id: int | None = None):
        super().__init__(f"Payment method not found: {method_id} (account={account_id})")
        self.method_id = method_id
        self.account_id = account_id


class DuplicatePaymentMethod(PaymentMethodError):
    pass


class AccountBusy(BillingError):
    """Аккаунт обрабатывается другим воркером (не взяли распределённый лок)."""

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} is locked by another worker")
        self.account_id = account_id
