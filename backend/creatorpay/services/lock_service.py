"""Distributed locking on Redis for webhook processing"""
import logging
import secrets
from typing import Any, Callable, Optional, TypeVar

import redis

from creatorpay.core.metrics import lock_contention_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_PREFIX = "lock:"

# Lua script: delete the key only if it still holds our token, return 1 if deleted
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class _LockNotAcquired:
    """Sentinel returned by with_lock when another worker owns the key"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "LOCK_NOT_ACQUIRED"


LOCK_NOT_ACQUIRED = _LockNotAcquired()


def subscription_lock_key(subscriber_id: str, creator_id: str, interval: str) -> str:
    return f"sub:{subscriber_id}:{creator_id}:{interval}"


def invoice_lock_key(invoice_id: str) -> str:
    return f"invoice:paid:{invoice_id}"


def payout_lock_key(reference: str) -> str:
    return f"payout:{reference}"


def refund_lock_key(charge_id: str) -> str:
    return f"refund:{charge_id}"


class DistributedLock:
    """Short-lived exclusive locks keyed by business identifiers.

    One instance is created per process and shared by every request; the Redis
    client it wraps is thread-safe.
    """

    def __init__(self, client: redis.Redis, prefix: str = LOCK_PREFIX):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def acquire(self, key: str, ttl_ms: int) -> Optional[str]:
        """Acquire the lock with SET NX PX.

        Returns:
            An ownership token when acquired, None when the key is already held
        """
        token = secrets.token_hex(16)
        acquired = self.client.set(self._key(key), token, nx=True, px=ttl_ms)
        return token if acquired else None

    def release(self, key: str, token: str) -> bool:
        """Release the lock if this caller still owns it.

        A lock that expired and was taken by another worker is left alone. The
        compare and delete run as one Lua script so no other SET can land between them.
        """
        released = self.client.eval(RELEASE_SCRIPT, 1, self._key(key), token)
        if not released:
            logger.warning(f"Lock {key} expired before release")
            return False
        return True

    def with_lock(self, key: str, ttl_ms: int, fn: Callable[[], T]) -> Any:
        """Run fn while holding the lock on key.

        Returns:
            fn's result, or LOCK_NOT_ACQUIRED if another worker holds the key.
            Not acquiring is not an error: the holder will finish the work.
        """
        token = self.acquire(key, ttl_ms)
        if token is None:
            scope = key.split(":", 1)[0]
            lock_contention_counter.labels(scope=scope).inc()
            logger.info(f"Lock {key} held by another worker, skipping")
            return LOCK_NOT_ACQUIRED

        try:
            return fn()
        finally:
            try:
                self.release(key, token)
            except redis.RedisError as e:
                # Key expires on its own after ttl_ms
                logger.error(f"Failed to release lock {key}: {e}")
