# donation_billing/billing/utils/redis_repo.py
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Dict, Iterator

try:
    # redis-py 5.x с async API
    from redis.asyncio import Redis
    from redis import Redis as SyncRedis
    from redis.exceptions import LockError
    from redis.lock import Lock
except Exception as e:
    raise RuntimeError("Install redis>=5.0: pip install redis>=5.0") from e

from billing.config import ACCOUNT_LOCK_TTL_SEC, REDIS_PREFIX, REDIS_URL
from billing.utils.errors import AccountBusy

LOG = logging.getLogger(__name__)

def _make_redis() -> Redis:
    """
    Подключение берётся из REDIS_URL (например: redis://localhost:6379/0).
    Если переменная не задана, используем локальный по умолчанию.
    """
    # decode_responses=True → str вместо bytes
    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,
        health_check_interval=30,
        socket_timeout=5,
    )

_redis = _make_redis()

def _now_ts() -> int:
    """Unix time seconds."""
    return int(time.time())


# === Межпроцессный лок аккаунта ===============================================
class RedisAccountLock:
    """
    Распределённый лок на account_id (redis-py Lock, SET NX PX + токен).
    Воркеры биллинга и вебхук-сервер могут жить в разных процессах:
    списание и сверка одного аккаунта не должны пересекаться.
    Ключ: {prefix}:lock:account:{account_id}

    TTL считается на один вызов шлюза: оркестратор продлевает лок (extend)
    перед каждым списанием, поэтому перебор нескольких карт его не теряет.
    """

    def __init__(self, redis: SyncRedis, prefix: str = "billing", ttl_sec: int = 120, wait_sec: float = 10.0):
        self.r = redis
        self.prefix = prefix
        self.ttl = ttl_sec
        self.wait = wait_sec
        self._held: Dict[int, Lock] = {}

    def _key(self, account_id: int) -> str:
        return f"{self.prefix}:lock:account:{account_id}"

    @contextmanager
    def hold(self, account_id: int) -> Iterator[None]:
        lock = self.r.lock(self._key(account_id), timeout=self.ttl, blocking_timeout=self.wait)
        if not lock.acquire():
            raise AccountBusy(account_id)
        self._held[account_id] = lock
        try:
            yield
        finally:
            self._held.pop(account_id, None)
            try:
                lock.release()
            except LockError:
                # TTL истёк раньше, чем закончили; ключ уже чужой или удалён
                LOG.warning("Account lock %s expired before release", self._key(account_id))

    def extend(self, account_id: int) -> None:
        """Сбросить TTL удерживаемого лока на полный ttl. Вне hold() ничего не делает."""
        lock = self._held.get(account_id)
        if lock is None:
            return
        try:
            lock.extend(self.ttl, replace_ttl=True)
        except LockError:
            # дальше защищает только version в БД
            LOG.warning("Account lock %s was lost before extend", self._key(account_id))


def make_account_lock() -> RedisAccountLock:
    return RedisAccountLock(
        SyncRedis.from_url(REDIS_URL, decode_responses=True, socket_timeout=5),
        prefix=REDIS_PREFIX,
        ttl_sec=ACCOUNT_LOCK_TTL_SEC,
    )


# === Дедупликация вебхуков ===================================================
PENDING = "pending"
FINAL = "final"

# промежуточные статусы платежа и финальные; всё прочее считаем неизвестным
PAYMENT_STATUS_STAGE = {
    "pending": PENDING,
    "waiting_for_capture": PENDING,
    "succeeded": FINAL,
    "canceled": FINAL,
}


class WebhookDedupRepo:
    """
    Отметки об обработанных уведомлениях о платеже.
    Ключ: {prefix}:wh:pay:{payment_id} (HASH: status, stage, seen_at), TTL 6 суток.

    should_process(payment_id, status):
      - отметки нет                    -> ставим, обрабатываем;
      - pending -> финальный статус    -> обновляем, обрабатываем;
      - тот же статус / шаг назад /
        другой финальный после финала  -> пропускаем.
    forget(payment_id): обработка упала (БД, лок аккаунта), снимаем отметку,
    чтобы повтор от провайдера не отбросили как дубль.

    Проверка и запись: одна транзакция WATCH/MULTI: два процесса вебхук-сервера
    не возьмут одно уведомление одновременно (проигравший получит WatchError).
    """

    def __init__(self, redis: Redis, prefix: str = "billing", ttl_sec: int = 144 * 3600):
        self.r = redis
        self.prefix = prefix
        self.ttl = ttl_sec

    def _key(self, payment_id: str) -> str:
        return f"{self.prefix}:wh:pay:{payment_id}"

    @asynccontextmanager
    async def _watched(self, key: str):
        pipe = self.r.pipeline()
        await pipe.watch(key)
        try:
            yield pipe
        finally:
            await pipe.reset()

    @staticmethod
    def is_newer(seen_status: str, new_status: str) -> bool:
        """Надо ли обрабатывать new_status, если уже видели seen_status ('': не видели)."""
        if not seen_status:
            return True
        if seen_status == new_status:
            return False
        return (PAYMENT_STATUS_STAGE.get(seen_status) != FINAL
                and PAYMENT_STATUS_STAGE.get(new_status) == FINAL)

    async def should_process(self, payment_id: str, new_status: str) -> bool:
        key = self._key(payment_id)
        new_status = (new_status or "").strip().lower()
        async with self._watched(key) as pipe:
            seen = ((await self.r.hget(key, "status")) or "").strip().lower()
            if not self.is_newer(seen, new_status):
                LOG.debug("Webhook %s: status %s after %s skipped", payment_id, new_status, seen)
                return False
            pipe.multi()
            pipe.hset(key, mapping={
                "status": new_status,
                "stage": PAYMENT_STATUS_STAGE.get(new_status, "unknown"),
                "seen_at": _now_ts(),
            })
            pipe.expire(key, self.ttl)
            await pipe.execute()
            return True

    async def forget(self, payment_id: str) -> None:
        try:
            await self.r.delete(self._key(payment_id))
        except Exception as e:
            LOG.warning("WebhookDedupRepo.forget(%s) failed: %s", payment_id, e)


# Глобальный экземпляр
webhook_dedup_repo = WebhookDedupRepo(_redis, prefix=REDIS_PREFIX)
