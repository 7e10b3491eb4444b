# donation_billing/billing/utils/locks.py
"""
Сериализация операций по account_id внутри процесса.
Между процессами — RedisAccountLock (redis_repo); строки БД дополнительно
читаются FOR UPDATE и пишутся с проверкой version.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._refs: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    # никто не ждёт — убираем, чтобы словарь не рос
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
