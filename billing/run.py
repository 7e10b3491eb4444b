# donation_billing/billing/run.py
import asyncio
import hmac
import json
import logging
import signal
from collections import Counter
from contextlib import suppress
from datetime import datetime
from typing import List, Optional

from aiohttp import web

from billing.config import (
    ADMIN_TOKEN, BILLING_SWEEP_CONCURRENCY, BILLING_SWEEP_INTERVAL_SEC, BILLING_SWEEP_LIMIT,
    WEBHOOK_HOST, WEBHOOK_PORT, WEBHOOK_SECRET,
)
import billing.utils.billing_db as billing_db
from billing.handlers.webhook_handler import SIGNATURE_HEADER, process_payment_webhook
from billing.utils.errors import AccountNotFound, BillingError
from billing.utils.gateway import YooKassaGateway
from billing.utils.logging_config import setup_logging
from billing.utils.orchestrator import BillingOrchestrator, CycleResult
from billing.utils.redis_repo import make_account_lock
from billing.utils.time_helpers import now_utc

ORCHESTRATOR = web.AppKey("orchestrator", BillingOrchestrator)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)
WEBHOOK_SECRET_KEY = web.AppKey("webhook_secret", str)

# Флаг для graceful shutdown
shutdown_event = asyncio.Event()


def build_orchestrator() -> BillingOrchestrator:
    return BillingOrchestrator(
        billing_db.get_repository(),
        YooKassaGateway(),
        account_lock=make_account_lock(),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Sweep: кого пора списывать
# ──────────────────────────────────────────────────────────────────────────────
async def sweep_once(
    orchestrator: BillingOrchestrator,
    *,
    now: Optional[datetime] = None,
    limit: int = BILLING_SWEEP_LIMIT,
    concurrency: int = BILLING_SWEEP_CONCURRENCY,
) -> List[CycleResult]:
    """
    Один проход: аккаунты с coalesce(next_retry_date, next_billing_date) <= now.
    Разные аккаунты списываются параллельно (потоки, не больше concurrency),
    один и тот же — строго последовательно (лок внутри run_cycle).
    """
    now = now or now_utc()
    due = await asyncio.to_thread(orchestrator.repo.accounts_due, now=now, limit=limit)
    if not due:
        logging.debug("billing sweep: nothing due at %s", now.isoformat())
        return []

    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(account_id: int) -> Optional[CycleResult]:
        async with sem:
            try:
                return await asyncio.to_thread(orchestrator.run_cycle, account_id)
            except BillingError as e:
                logging.error("billing sweep: account %s failed: %s", account_id, e)
            except Exception:
                logging.exception("billing sweep: unexpected error for account %s", account_id)
            return None

    results = [r for r in await asyncio.gather(*(_one(a) for a in due)) if r is not None]
    summary = Counter(r.outcome.value for r in results)
    logging.info("billing sweep: %s due, outcomes %s", len(due), dict(summary))
    return results


async def billing_loop(orchestrator: BillingOrchestrator, event: asyncio.Event, *,
                       interval: float = BILLING_SWEEP_INTERVAL_SEC,
                       limit: int = BILLING_SWEEP_LIMIT,
                       concurrency: int = BILLING_SWEEP_CONCURRENCY) -> None:
    """
    Фоновый цикл рекуррентного биллинга.
    Поддерживает корректное завершение по сигналам (SIGTERM/SIGINT) для systemd.
    """
    logging.info("billing_loop started (interval=%ss, limit=%s, concurrency=%s)", interval, limit, concurrency)
    while not event.is_set():
        try:
            await sweep_once(orchestrator, limit=limit, concurrency=concurrency)
        except Exception as e:
            logging.exception("billing_loop error: %s", e)

        # Прерываемый sleep
        try:
            await asyncio.wait_for(event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logging.info("billing_loop stopped")


# ──────────────────────────────────────────────────────────────────────────────
# HTTP: вебхук провайдера + админский перезапуск цикла
# ──────────────────────────────────────────────────────────────────────────────
async def payment_webhook_handler(request: web.Request) -> web.Response:
    try:
        raw = await request.read()
        try:
            data = json.loads(raw or b"{}")
        except ValueError:
            return web.Response(status=400, text="invalid json")
        logging.info("Payment webhook received: %s", data.get("event") if isinstance(data, dict) else data)

        status, msg = await process_payment_webhook(
            request.app[ORCHESTRATOR],
            data,
            raw_body=raw,
            signature=request.headers.get(SIGNATURE_HEADER),
            secret=request.app[WEBHOOK_SECRET_KEY],
        )
        if status != 200:
            logging.warning("Webhook not OK: %s", msg)
        return web.Response(status=status, text=msg)

    except Exception as e:
        logging.exception("Error processing payment webhook: %s", e)
        return web.Response(status=500)


def _is_admin(request: web.Request) -> bool:
    token = request.app[ADMIN_TOKEN_KEY]
    if not token:
        return False
    auth = request.headers.get("Authorization", "")
    scheme, _, value = auth.partition(" ")
    return scheme.lower() == "bearer" and hmac.compare_digest(value.strip(), token)


async def admin_run_cycle_handler(request: web.Request) -> web.Response:
    """Ручной перезапуск цикла: поведение то же, что у планировщика."""
    if not _is_admin(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    try:
        account_id = int(request.match_info["account_id"])
    except (KeyError, ValueError):
        return web.json_response({"error": "account_id must be an integer"}, status=400)

    try:
        result = await asyncio.to_thread(request.app[ORCHESTRATOR].run_cycle, account_id)
    except AccountNotFound as e:
        return web.json_response({"error": str(e)}, status=404)
    except BillingError as e:
        return web.json_response({"error": str(e)}, status=409)
    logging.info("Admin re-triggered cycle for account %s: %s", account_id, result.outcome.value)
    return web.json_response(result.as_dict())


def create_app(orchestrator: BillingOrchestrator, *, admin_token: str = ADMIN_TOKEN,
               webhook_secret: str = WEBHOOK_SECRET) -> web.Application:
    app = web.Application()
    app[ORCHESTRATOR] = orchestrator
    app[ADMIN_TOKEN_KEY] = admin_token
    app[WEBHOOK_SECRET_KEY] = webhook_secret
    app.router.add_post("/payment", payment_webhook_handler)
    app.router.add_post("/admin/run-cycle/{account_id}", admin_run_cycle_handler)
    return app


async def main():
    setup_logging()
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    # Инициализация БД перед любыми обработками
    billing_db.init_billing_db()
    logging.info("DB initialized")

    orchestrator = build_orchestrator()
    runner = web.AppRunner(create_app(orchestrator))
    await runner.setup()
    site = web.TCPSite(runner, WEBHOOK_HOST, WEBHOOK_PORT)
    await site.start()
    logging.info("HTTP listening on %s:%s", WEBHOOK_HOST, WEBHOOK_PORT)

    loop = asyncio.get_running_loop()

    def _stop(signum, frame):
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logging.warning("Получен сигнал %s (%s), завершаем работу...", signal_name, signum)
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    billing_task = asyncio.create_task(billing_loop(orchestrator, shutdown_event), name="billing_loop")
    try:
        await shutdown_event.wait()
    finally:
        billing_task.cancel()
        with suppress(asyncio.CancelledError):
            await billing_task
        await runner.cleanup()
        orchestrator.close()
        logging.info("Billing service stopped")


if __name__ == '__main__':
    asyncio.run(main())
