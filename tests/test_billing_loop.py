"""
Tests for the billing sweep loop and the HTTP surface.
"""
import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from billing.run import billing_loop, create_app, sweep_once
from billing.handlers.webhook_handler import SIGNATURE_HEADER, sign_body
from billing.utils.domain import CycleOutcome, SubscriptionStatus as S
from billing.utils.errors import AccountBusy


@pytest.mark.asyncio
async def test_sweep_charges_only_due_accounts(orchestrator, in_memory_db, factory, gateway, mock_time):
    due = [factory.account(name=f"Org {i}") for i in range(3)]
    later = factory.account(name="Later", next_billing_date=mock_time + timedelta(days=5))
    for account_id in due + [later]:
        factory.method(account_id, f"pm_token_{account_id:04d}")

    results = await sweep_once(orchestrator, now=mock_time, limit=10, concurrency=1)

    assert sorted(r.account_id for r in results) == due
    assert all(r.outcome is CycleOutcome.SUCCESS for r in results)
    assert len(gateway.calls) == 3
    assert in_memory_db.get_account(later).next_billing_date == mock_time + timedelta(days=5)


@pytest.mark.asyncio
async def test_sweep_survives_single_account_failure(mock_time):
    orch = MagicMock()
    orch.repo.accounts_due.return_value = [1, 2]
    ok = MagicMock(account_id=2)
    ok.outcome = CycleOutcome.SUCCESS
    orch.run_cycle.side_effect = [AccountBusy(1), ok]

    results = await sweep_once(orch, now=mock_time, concurrency=1)

    assert results == [ok]
    assert orch.run_cycle.call_count == 2


@pytest.mark.asyncio
async def test_sweep_with_nothing_due(orchestrator, mock_time):
    assert await sweep_once(orchestrator, now=mock_time) == []


@pytest.mark.asyncio
async def test_billing_loop_stops_on_shutdown_event():
    event = asyncio.Event()
    orch = MagicMock()

    async def fake_sweep(*args, **kwargs):
        event.set()
        return []

    with patch("billing.run.sweep_once", new=AsyncMock(side_effect=fake_sweep)) as mock_sweep:
        await asyncio.wait_for(billing_loop(orch, event, interval=60), timeout=2)

    mock_sweep.assert_awaited_once()


@pytest.mark.asyncio
async def test_billing_loop_keeps_running_after_error():
    event = asyncio.Event()
    calls = []

    async def flaky_sweep(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db unavailable")
        event.set()
        return []

    with patch("billing.run.sweep_once", new=AsyncMock(side_effect=flaky_sweep)):
        await asyncio.wait_for(billing_loop(MagicMock(), event, interval=0.01), timeout=2)

    assert len(calls) == 2


# ──────────────────────────────────────────────────────────────────────────────
# HTTP
# ──────────────────────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_admin_run_cycle_requires_token(orchestrator, factory):
    account_id = factory.account()
    app = create_app(orchestrator, admin_token="adm1n", webhook_secret="")

    async with TestClient(TestServer(app)) as client:
        resp = await client.post(f"/admin/run-cycle/{account_id}")
        assert resp.status == 401
        resp = await client.post(f"/admin/run-cycle/{account_id}", headers={"Authorization": "Bearer wrong"})
        assert resp.status == 401


@pytest.mark.asyncio
async def test_admin_run_cycle_behaves_like_sweep(orchestrator, in_memory_db, factory, gateway):
    account_id = factory.account()
    factory.method(account_id, "pm_token_0001")
    app = create_app(orchestrator, admin_token="adm1n", webhook_secret="")
    auth = {"Authorization": "Bearer adm1n"}

    async with TestClient(TestServer(app)) as client:
        resp = await client.post(f"/admin/run-cycle/{account_id}", headers=auth)
        assert resp.status == 200
        body = await resp.json()
        assert body["outcome"] == "success"
        assert body["status"] == "active"

        resp = await client.post(f"/admin/run-cycle/{account_id}", headers=auth)
        assert (await resp.json())["outcome"] == "not_due"

        resp = await client.post("/admin/run-cycle/9999", headers=auth)
        assert resp.status == 404
        resp = await client.post("/admin/run-cycle/abc", headers=auth)
        assert resp.status == 400

    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_admin_disabled_without_token(orchestrator, factory):
    account_id = factory.account()
    app = create_app(orchestrator, admin_token="", webhook_secret="")

    async with TestClient(TestServer(app)) as client:
        resp = await client.post(f"/admin/run-cycle/{account_id}", headers={"Authorization": "Bearer "})
        assert resp.status == 401


@pytest.mark.asyncio
async def test_payment_route_verifies_signature_and_reconciles(orchestrator, in_memory_db, factory, gateway,
                                                               sample_payment_webhook_succeeded, mock_dedup):
    account_id = factory.account()
    method_id = factory.method(account_id, "pm_token_0001")
    gateway.will("pm_token_0001", "decline")
    orchestrator.run_cycle(account_id)
    meta = sample_payment_webhook_succeeded["object"]["metadata"]
    meta.update(account_id=str(account_id), payment_method_id=str(method_id))
    raw = json.dumps(sample_payment_webhook_succeeded).encode()
    app = create_app(orchestrator, admin_token="", webhook_secret="whsec")

    with patch("billing.handlers.webhook_handler.webhook_dedup_repo", mock_dedup):
        async with TestClient(TestServer(app)) as client:
            resp = await client.post("/payment", data=raw, headers={SIGNATURE_HEADER: "v1=00"})
            assert resp.status == 401

            resp = await client.post("/payment", data=raw, headers={SIGNATURE_HEADER: sign_body(raw, "whsec")})
            assert resp.status == 200
            assert (await resp.text()).startswith("applied")

            resp = await client.post("/payment", data=b"{not json", headers={SIGNATURE_HEADER: "v1=00"})
            assert resp.status == 400

    assert in_memory_db.get_account(account_id).subscription_status is S.ACTIVE
