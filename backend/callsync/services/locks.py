import logging
from contextlib import contextmanager
from typing import Iterator

import redis
from redis.exceptions import ConnectionError, LockError

from callsync.core.config import settings

logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking redis lock that keeps one sync run per key in flight."""

    def __init__(self, key: str, timeout_seconds: int | None = None, client: redis.Redis | None = None):
        self.key = f"callsync:run:{key}"
        self.timeout_seconds = timeout_seconds or settings.sync_lock_timeout_seconds
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    @contextmanager
    def hold(self) -> Iterator[bool]:
        lock = self.client.lock(self.key, timeout=self.timeout_seconds, blocking=False)
        try:
            acquired = lock.acquire(blocking=False)
        except ConnectionError as exc:
            logger.warning("Redis unavailable, cannot take %s: %s", self.key, exc)
            acquired = False
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except (LockError, ConnectionError) as exc:
                    logger.warning("Could not release %s: %s", self.key, exc)
