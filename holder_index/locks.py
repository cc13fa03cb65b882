import logging
import threading
import uuid

from holder_index.cache import cache_key

logger = logging.getLogger(__name__)


class Lock:
    """Non-blocking per-key mutual exclusion."""

    def try_acquire(self, key):
        raise NotImplementedError

    def renew(self, key):
        """Confirm the caller still holds `key`, extending it where it can expire."""
        raise NotImplementedError

    def release(self, key):
        raise NotImplementedError


class InProcessLock(Lock):
    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def try_acquire(self, key):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        return lock.acquire(blocking=False)

    def renew(self, key):
        return True

    def release(self, key):
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()


class CacheLeaseLock(Lock):
    """Lease held as a `{key}_lock` entry in a shared cache store.

    The lease expires after `ttl` seconds so a crashed process cannot wedge a
    collection forever. A live run renews it as it moves through its phases.
    """

    def __init__(self, store, ttl=3600):
        self.store = store
        self.ttl = ttl
        self.owner = uuid.uuid4().hex

    def try_acquire(self, key):
        return self.store.add(cache_key(key, "lock"), {"owner": self.owner}, ttl=self.ttl)

    def renew(self, key):
        lk = cache_key(key, "lock")
        if self.store.touch_owned(lk, self.owner, self.ttl):
            return True
        logger.warning(f"Lease {lk} expired or was taken over")
        return False

    def release(self, key):
        lk = cache_key(key, "lock")
        if not self.store.delete_owned(lk, self.owner):
            logger.warning(f"Lease {lk} is not held by this process, not releasing")


def make_lock(settings, store):
    if settings.lock_backend == "cache":
        return CacheLeaseLock(store, settings.lock_ttl)
    return InProcessLock()
