"""
Tests for payment method management in the billing repository.
"""
from datetime import datetime, timedelta

import pytest

from billing.utils.domain import PaymentMethodStatus, SubscriptionStatus as S
from billing.utils.errors import AccountNotFound, DuplicatePaymentMethod, PaymentMethodNotFound, StaleStateError
from billing.utils.time_helpers import UTC


def test_provider_sync_creates_low_priority_method(in_memory_db, factory):
    account_id = factory.inactive_account()

    method_id = in_memory_db.payment_method_upsert_from_provider(
        account_id=account_id, provider="yookassa", instrument_id="pm_token_0001",
        brand="Visa", last4="4242", exp_month=12, exp_year=2030,
    )

    pm = in_memory_db.get_payment_method(method_id)
    assert pm.priority == 999
    assert not pm.is_default
    assert pm.status is PaymentMethodStatus.ACTIVE
    assert pm.label == "yookassa:Visa*4242"


def test_provider_sync_revives_removed_method_but_keeps_failures(in_memory_db, factory):
    account_id = factory.inactive_account()
    method_id = factory.method(account_id, "pm_token_0001", failure_count=2)
    in_memory_db.remove_payment_method(account_id=account_id, method_id=method_id)
    assert in_memory_db.list_payment_methods(account_id) == []

    again = in_memory_db.payment_method_upsert_from_provider(
        account_id=account_id, provider="yookassa", instrument_id="pm_token_0001", last4="0001",
    )

    assert again == method_id
    pm = in_memory_db.get_payment_method(method_id)
    assert pm.deleted_at is None
    assert pm.failure_count == 2


def test_add_duplicate_method_rejected(in_memory_db, factory):
    account_id = factory.inactive_account()
    factory.method(account_id, "pm_token_0001")
    with pytest.raises(DuplicatePaymentMethod):
        factory.method(account_id, "pm_token_0001")


def test_add_method_for_unknown_account(in_memory_db):
    with pytest.raises(AccountNotFound):
        in_memory_db.add_payment_method(account_id=999, provider="yookassa", instrument_id="pm_token_0001")


def test_set_default_moves_flag_and_priority(in_memory_db, factory):
    account_id = factory.inactive_account()
    a = factory.method(account_id, "pm_token_0001", default=True)
    b = factory.method(account_id, "pm_token_0002", priority=4)

    in_memory_db.set_default_payment_method(account_id=account_id, method_id=b)

    assert not in_memory_db.get_payment_method(a).is_default
    pm_b = in_memory_db.get_payment_method(b)
    assert pm_b.is_default
    assert pm_b.priority == 0
    assert in_memory_db.get_account(account_id).primary_payment_method_id == b


def test_priority_update_validation(in_memory_db, factory):
    account_id = factory.inactive_account()
    method_id = factory.method(account_id, "pm_token_0001")

    in_memory_db.update_payment_method_priority(account_id=account_id, method_id=method_id, priority=3)
    assert in_memory_db.get_payment_method(method_id).priority == 3

    with pytest.raises(ValueError):
        in_memory_db.update_payment_method_priority(account_id=account_id, method_id=method_id, priority=-1)


def test_foreign_method_is_not_found(in_memory_db, factory):
    owner = factory.inactive_account(name="Owner")
    other = factory.inactive_account(name="Other")
    method_id = factory.method(owner, "pm_token_0001")

    with pytest.raises(PaymentMethodNotFound):
        in_memory_db.set_default_payment_method(account_id=other, method_id=method_id)
    with pytest.raises(PaymentMethodNotFound):
        in_memory_db.remove_payment_method(account_id=other, method_id=method_id)


def test_manual_enable_resets_failures(in_memory_db, factory):
    account_id = factory.inactive_account()
    method_id = factory.method(account_id, "pm_token_0001", status=PaymentMethodStatus.DISABLED, failure_count=3)

    in_memory_db.enable_payment_method(account_id=account_id, method_id=method_id)

    pm = in_memory_db.get_payment_method(method_id)
    assert pm.status is PaymentMethodStatus.ACTIVE
    assert pm.failure_count == 0


def test_removing_primary_method_unlinks_it(in_memory_db, factory):
    account_id = factory.inactive_account()
    method_id = factory.method(account_id, "pm_token_0001", default=True)
    assert in_memory_db.get_account(account_id).primary_payment_method_id == method_id

    in_memory_db.remove_payment_method(account_id=account_id, method_id=method_id)

    assert in_memory_db.get_account(account_id).primary_payment_method_id is None
    assert len(in_memory_db.list_payment_methods(account_id, include_deleted=True)) == 1


def test_update_account_checks_version(in_memory_db, factory):
    account_id = factory.inactive_account()
    acc = in_memory_db.get_account(account_id)

    updated = in_memory_db.update_account(account_id, {"subscription_tier": "pro"}, expected_version=acc.version)
    assert updated.version == acc.version + 1

    with pytest.raises(StaleStateError):
        in_memory_db.update_account(account_id, {"subscription_tier": "elite"}, expected_version=acc.version)
    with pytest.raises(ValueError):
        in_memory_db.update_account(account_id, {"version": 42})


def test_accounts_due_uses_retry_date_in_past_due(in_memory_db, factory):
    now = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
    cycle = datetime(2026, 1, 14, tzinfo=UTC)
    waiting = factory.account(status=S.PAST_DUE, next_billing_date=cycle, next_retry_date=now + timedelta(days=1))
    retry_now = factory.account(status=S.PAST_DUE, next_billing_date=cycle, next_retry_date=now - timedelta(hours=1))
    active_due = factory.account(next_billing_date=now - timedelta(days=2))
    factory.account(status=S.CANCELED, next_billing_date=cycle)

    assert in_memory_db.accounts_due(now=now) == [active_due, retry_now]
    assert waiting not in in_memory_db.accounts_due(now=now + timedelta(hours=12))
    assert waiting in in_memory_db.accounts_due(now=now + timedelta(days=1))
