"""Per-vehicle mutual exclusion with an explicit lease and a bounded wait."""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import redis

from .errors import VehicleLockedError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "fleetmetrics:vehicle-lock:"


@dataclass
class Lease:
    key: str
    token: str
    expires_at: float
    handle: Any = None


class LockProvider(Protocol):
    def acquire(self, key: str, lease_seconds: float, wait_seconds: float) -> Optional[Lease]:
        ...

    def release(self, lease: Lease) -> None:
        ...


class InMemoryLockProvider:
    """In-process leases; an expired lease may be taken over by the next caller."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._leases: Dict[str, Lease] = {}
        self._condition = threading.Condition()

    def acquire(self, key: str, lease_seconds: float, wait_seconds: float = 0.0) -> Optional[Lease]:
        give_up_at = time.monotonic() + max(0.0, wait_seconds)
        with self._condition:
            while True:
                now = self.clock()
                held = self._leases.get(key)
                if held is None or held.expires_at <= now:
                    if held is not None:
                        logger.warning("Lease on %s expired, taking it over", key)
                    lease = Lease(key=key, token=uuid.uuid4().hex, expires_at=now + lease_seconds)
                    self._leases[key] = lease
                    return lease

                remaining = give_up_at - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def release(self, lease: Lease) -> None:
        with self._condition:
            held = self._leases.get(lease.key)
            if held is not None and held.token == lease.token:
                del self._leases[lease.key]
            self._condition.notify_all()

    def is_locked(self, key: str) -> bool:
        with self._condition:
            held = self._leases.get(key)
            return held is not None and held.expires_at > self.clock()


class RedisLockProvider:
    """Leases shared across processes, backed by redis-py ``Lock``."""

    def __init__(self, client: redis.Redis, prefix: str = LOCK_PREFIX):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisLockProvider":
        return cls(redis.Redis.from_url(url))

    def acquire(self, key: str, lease_seconds: float, wait_seconds: float = 0.0) -> Optional[Lease]:
        lock = self.client.lock(
            self.prefix + key,
            timeout=lease_seconds,
            blocking_timeout=wait_seconds,
            thread_local=False
        )
        if not lock.acquire(blocking=wait_seconds > 0):
            return None
        token = lock.local.token
        if isinstance(token, bytes):
            token = token.decode()
        return Lease(key=key, token=token, expires_at=time.time() + lease_seconds, handle=lock)

    def release(self, lease: Lease) -> None:
        try:
            lease.handle.release()
        except redis.exceptions.LockError:
            logger.warning("Lease on %s was already lost before release", lease.key)


def build_lock_provider(backend: str, redis_url: Optional[str] = None) -> LockProvider:
    if backend == "redis":
        logger.info("Using redis lock backend")
        return RedisLockProvider.from_url(redis_url)
    return InMemoryLockProvider()


@contextmanager
def vehicle_lock(provider: LockProvider, vehicle_id, lease_seconds: float, wait_seconds: float):
    """Hold the vehicle's lease for the body; raise VehicleLockedError if the wait elapses."""
    lease = provider.acquire(str(vehicle_id), lease_seconds, wait_seconds)
    if lease is None:
        raise VehicleLockedError(vehicle_id)
    try:
        yield lease
    finally:
        provider.release(lease)
