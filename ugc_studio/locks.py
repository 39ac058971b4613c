"""
Per-generation step lock.

Every step that submits an external job (scene, frame extraction, lip-sync,
combine) runs while holding `steplock:{generation_id}`. Two pollers that
observe the same finished job therefore cannot both submit the follow-up
job; the loser sees `acquired=False` and skips the side effect.

Backed by Redis `SET NX EX` when REDIS_URL is set, otherwise by an
in-process table with the same TTL semantics (single worker only).
"""

import os
import time
import uuid
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

STEP_LOCK_TTL_SECONDS = int(os.environ.get("STEP_LOCK_TTL_SECONDS", "120"))
KEY_PREFIX = "steplock:"

# Compare-and-delete so an expired holder never releases someone else's lock
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class StepLock(ABC):
    """Base API shared by both backends."""

    @abstractmethod
    def acquire(self, key: str) -> Optional[str]:
        """Return an owner token, or None if the key is held."""

    @abstractmethod
    def release(self, key: str, token: str):
        """Release the key if `token` still owns it."""

    @contextmanager
    def hold(self, key: str):
        """Yield True if the lock was taken, False if someone else holds it."""
        token = self.acquire(key)
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(key, token)


class InMemoryStepLock(StepLock):
    def __init__(self, ttl_seconds: int = STEP_LOCK_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._held: Dict[str, Tuple[str, float]] = {}  # key → (token, expires_at)

    def acquire(self, key: str) -> Optional[str]:
        now = time.time()
        with self._lock:
            current = self._held.get(key)
            if current and current[1] > now:
                return None
            token = uuid.uuid4().hex
            self._held[key] = (token, now + self.ttl_seconds)
            return token

    def release(self, key: str, token: str):
        with self._lock:
            current = self._held.get(key)
            if current and current[0] == token:
                del self._held[key]

    def is_held(self, key: str) -> bool:
        with self._lock:
            current = self._held.get(key)
            return bool(current and current[1] > time.time())


class RedisStepLock(StepLock):
    def __init__(self, redis_client, ttl_seconds: int = STEP_LOCK_TTL_SECONDS):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    def acquire(self, key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        if self.redis.set(f"{KEY_PREFIX}{key}", token, nx=True, ex=self.ttl_seconds):
            return token
        return None

    def release(self, key: str, token: str):
        try:
            self.redis.eval(_RELEASE_SCRIPT, 1, f"{KEY_PREFIX}{key}", token)
        except Exception as e:
            # The TTL still frees the key
            logger.warning(f"Step lock release failed for {key}: {e}")


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            client = redis.from_url(redis_url, decode_responses=True)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.exceptions.RedisError as e:
                logger.warning(f"Redis connection failed: {e} — using in-memory step lock")
    return _redis_client


def build_step_lock() -> StepLock:
    r = get_redis()
    if r is not None:
        return RedisStepLock(r)
    logger.info("No Redis — using in-memory step lock")
    return InMemoryStepLock()
