"""
Distributed locks for payment background work.

Row locks (select_for_update) already serialize status changes on a single
payment. DistributedLock covers the work that spans many rows or waits on
provider APIs: the stale-payment sweep and per-event webhook processing,
where two workers picking up the same job would only waste provider calls.

Usage:
    from payments.locks import DistributedLock

    with DistributedLock("payments:reconcile", ttl=600, blocking=False):
        orchestrator.reconcile_stale_payments(cutoff)
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING, Any

from django_redis import get_redis_connection

from payments.exceptions import LockAcquisitionError

if TYPE_CHECKING:
    from redis import Redis


KEY_PREFIX = "lock:"

# Lua: delete only if the stored token is ours
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class DistributedLock:
    """
    Redis lock with a TTL and an ownership token.

    The TTL bounds how long a crashed holder can block others. Release only
    deletes the key while it still carries this instance's token, so a lock
    that expired and was taken by another worker is left alone.

    Args:
        key: Lock name, stored as ``lock:<key>``
        ttl: Seconds before the lock expires on its own
        blocking: Wait for the lock instead of failing immediately
        timeout: Maximum wait in seconds when blocking
        poll_interval: Seconds between attempts when blocking
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.key = f"{KEY_PREFIX}{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._token: str | None = None
        self._redis: Redis | None = None

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self) -> bool:
        """
        Take the lock.

        Raises:
            LockAcquisitionError: Lock is held elsewhere (non-blocking) or
                could not be taken within ``timeout``
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.timeout

        while True:
            if self.redis.set(self.key, token, nx=True, ex=self.ttl):
                self._token = token
                return True
            if not self.blocking:
                raise LockAcquisitionError(
                    f"Lock '{self.key}' is already held",
                    details={"key": self.key},
                )
            if time.monotonic() >= deadline:
                raise LockAcquisitionError(
                    f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                    details={"key": self.key, "timeout": self.timeout},
                )
            time.sleep(self.poll_interval)

    def release(self) -> bool:
        """Release the lock. Returns False if it was not held by us."""
        if self._token is None:
            return False
        token, self._token = self._token, None
        return bool(self.redis.eval(RELEASE_SCRIPT, 1, self.key, token))

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        self.release()
        return False


__all__ = ["DistributedLock"]
