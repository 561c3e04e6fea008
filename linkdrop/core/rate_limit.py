from __future__ import annotations

import logging
import threading
from time import monotonic, time
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger("linkdrop")


class RateLimiter:
    """Fixed window rate limiter per client, shared through Redis when configured."""

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        namespace: str = "api",
        redis_url: Optional[str] = None,
    ) -> None:
        self.limit = max(limit, 1)
        self.window_seconds = max(window_seconds, 1)
        self.namespace = namespace
        self._clients: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._redis = self._connect(redis_url)

    @staticmethod
    def _connect(redis_url: Optional[str]):
        if not redis_url:
            return None
        try:
            client = redis.from_url(redis_url)
            client.ping()
            return client
        except redis.RedisError as exc:
            logger.warning("event=rate_limit_redis_unavailable error=%s", exc)
            return None

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    def hit(self, key: str) -> Tuple[bool, int]:
        """
        Register a hit for the given key.
        Returns (allowed, retry_after_seconds).
        """
        if self._redis is not None:
            try:
                return self._hit_redis(key)
            except redis.RedisError as exc:
                logger.warning("event=rate_limit_redis_error error=%s", exc)
        return self._hit_memory(key)

    def _hit_redis(self, key: str) -> Tuple[bool, int]:
        now = int(time())
        window = now // self.window_seconds
        redis_key = f"rate_limit:{self.namespace}:{key}:{window}"
        pipe = self._redis.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, self.window_seconds)
        count, _ = pipe.execute()
        retry_after = self.window_seconds - now % self.window_seconds
        return int(count) <= self.limit, retry_after

    def _hit_memory(self, key: str) -> Tuple[bool, int]:
        now = monotonic()
        with self._lock:
            count, reset_at = self._clients.get(key, (0, now + self.window_seconds))
            if now > reset_at:
                count = 0
                reset_at = now + self.window_seconds
            if count >= self.limit:
                retry_after = max(0, int(reset_at - now))
                return False, retry_after or 1

            self._clients[key] = (count + 1, reset_at)
            retry_after = max(0, int(reset_at - now))
            return True, retry_after
