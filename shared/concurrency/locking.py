"""
Concurrency Control: Keyed Pessimistic Locks

Serializes work per resource (one lock per class) inside a process.
Waiting is always bounded; a caller that cannot get the lock in time
gets None back and decides how to fail.
"""

import asyncio
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

import structlog

from shared.domain.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class Lock:
    """
    Pessimistic lock held on a resource.

    Records who holds the resource and since when.
    """

    def __init__(
        self,
        resource_id: str,
        lock_id: UUID,
        owner: str,
        acquired_at: datetime,
    ):
        """
        Initialize lock.

        Args:
            resource_id: Resource being locked
            lock_id: Unique lock identifier
            owner: Lock owner identifier
            acquired_at: When the lock was granted
        """
        self.resource_id = resource_id
        self.lock_id = lock_id
        self.owner = owner
        self.acquired_at = acquired_at


class LockManager:
    """
    Manages pessimistic locks for resources.

    Each resource id maps to its own asyncio.Lock, so holders of different
    resources never wait on each other. Idle mutexes are dropped on release.
    """

    def __init__(self, clock: Clock = utc_now):
        """Initialize lock manager."""
        self._mutexes: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, Lock] = {}
        self._waiters: dict[str, int] = {}
        self._clock = clock
        logger.debug("Lock manager initialized")

    async def acquire_lock(
        self,
        resource_id: str,
        owner: str,
        wait_timeout: float,
    ) -> Lock | None:
        """
        Acquire a pessimistic lock on a resource.

        Args:
            resource_id: Resource to lock
            owner: Lock owner identifier
            wait_timeout: Maximum seconds to wait while another owner holds it

        Returns:
            Lock instance if acquired, None if the wait timed out
        """
        mutex = self._mutexes.setdefault(resource_id, asyncio.Lock())
        self._waiters[resource_id] = self._waiters.get(resource_id, 0) + 1
        try:
            async with asyncio.timeout(wait_timeout):
                await mutex.acquire()
        except TimeoutError:
            current = self._holders.get(resource_id)
            logger.warning(
                "Lock acquisition timeout",
                resource_id=resource_id,
                owner=owner,
                wait_timeout=wait_timeout,
                current_owner=current.owner if current else None,
            )
            return None
        finally:
            self._waiters[resource_id] -= 1
            self._discard_if_idle(resource_id)

        lock = Lock(
            resource_id=resource_id,
            lock_id=uuid4(),
            owner=owner,
            acquired_at=self._clock(),
        )
        self._holders[resource_id] = lock

        logger.debug(
            "Lock acquired",
            resource_id=resource_id,
            owner=owner,
            lock_id=str(lock.lock_id),
        )
        return lock

    def release_lock(self, resource_id: str, owner: str) -> bool:
        """
        Release a lock on a resource.

        Args:
            resource_id: Resource to unlock
            owner: Lock owner (must match)

        Returns:
            True if lock was released, False if not found or owner mismatch
        """
        lock = self._holders.get(resource_id)

        if not lock:
            logger.warning("Lock not found", resource_id=resource_id)
            return False

        if lock.owner != owner:
            logger.warning(
                "Lock owner mismatch",
                resource_id=resource_id,
                owner=owner,
                lock_owner=lock.owner,
            )
            return False

        del self._holders[resource_id]
        self._mutexes[resource_id].release()
        self._discard_if_idle(resource_id)

        logger.debug(
            "Lock released",
            resource_id=resource_id,
            owner=owner,
            lock_id=str(lock.lock_id),
        )
        return True

    def is_locked(self, resource_id: str) -> bool:
        """Check if resource is currently locked."""
        return resource_id in self._holders

    def get_lock_info(self, resource_id: str) -> dict[str, Any] | None:
        """Get information about current lock."""
        lock = self._holders.get(resource_id)
        if not lock:
            return None

        return {
            "resource_id": lock.resource_id,
            "lock_id": str(lock.lock_id),
            "owner": lock.owner,
            "acquired_at": lock.acquired_at.isoformat(),
            "held_seconds": (self._clock() - lock.acquired_at).total_seconds(),
            "waiters": self._waiters.get(resource_id, 0),
        }

    def _discard_if_idle(self, resource_id: str) -> None:
        mutex = self._mutexes.get(resource_id)
        if mutex is None or mutex.locked() or self._waiters.get(resource_id):
            return
        del self._mutexes[resource_id]
        self._waiters.pop(resource_id, None)
