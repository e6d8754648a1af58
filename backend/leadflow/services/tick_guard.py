import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis

from leadflow.core.config import settings

logger = logging.getLogger(__name__)


class RedisTickGuard:
    """
    One lock per worker kind, shared by every worker process. A tick that
    cannot take the lock is skipped; the TTL frees the lock if the holder dies.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None,
                 prefix: str = "leadflow:tick:"):
        self.client = client or redis.Redis.from_url(settings.REDIS_URL)
        self.ttl_seconds = ttl_seconds or settings.TICK_LOCK_TTL_SECONDS
        self.prefix = prefix

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        lock = self.client.lock(f"{self.prefix}{name}", timeout=self.ttl_seconds)
        acquired = lock.acquire(blocking=False)
        if not acquired:
            logger.info(f"[TICK] {name} still running elsewhere, skipping this tick")
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except redis.exceptions.LockError as e:
                    logger.warning(f"[TICK] {name} lock expired before release: {e}")


class LocalTickGuard:
    """In-process variant for single-process deployments and tests."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(name, threading.Lock())

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        lock = self._lock_for(name)
        acquired = lock.acquire(blocking=False)
        if not acquired:
            logger.info(f"[TICK] {name} still running, skipping this tick")
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
