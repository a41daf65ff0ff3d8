"""
Enrollment Store

Scoped units of work over the relational store. A transaction commits when
its block exits normally and rolls back on any exception, cancellation
included. Every store call and class-lock wait is bounded by a timeout.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar
from uuid import uuid4

import structlog
from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.enrollment_service.models import ClassModel
from shared.concurrency.locking import LockManager
from shared.domain.exceptions import (
    EntityNotFoundError,
    StoreTimeoutError,
    StoreUnavailableError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """
    One transaction against the store.

    Holds the session and the class locks taken inside it. Locks are
    released only after commit or rollback.
    """

    def __init__(self, store: "EnrollmentStore", session: AsyncSession):
        self.id = str(uuid4())
        self.session = session
        self._store = store
        self._locked_classes: list[str] = []
        self._after_commit: list[Callable[[], None]] = []

    async def _bounded(self, awaitable: Any, operation: str) -> Any:
        timeout = self._store.timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                return await awaitable
        except TimeoutError:
            raise StoreTimeoutError(operation=operation, timeout_seconds=timeout) from None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e), operation=operation, cause=e) from e

    async def lock_class(self, class_id: str) -> ClassModel:
        """
        Take the exclusive per-class token and load the class row.

        Re-entrant within one unit of work.

        Raises:
            EntityNotFoundError: If the class does not exist
            StoreTimeoutError: If the lock could not be acquired in time
        """
        if class_id not in self._locked_classes:
            wait_timeout = self._store.lock_wait_timeout_seconds
            lock = await self._store.lock_manager.acquire_lock(
                f"class:{class_id}", owner=self.id, wait_timeout=wait_timeout
            )
            if lock is None:
                raise StoreTimeoutError(operation="lock_class", timeout_seconds=wait_timeout)
            self._locked_classes.append(class_id)

        cls = await self.scalar(
            select(ClassModel)
            .where(ClassModel.id == class_id)
            .with_for_update()
            .execution_options(populate_existing=True),
            operation="lock_class",
        )
        if cls is None:
            raise EntityNotFoundError("Class", class_id)
        return cls

    async def get_class(self, class_id: str) -> ClassModel:
        """Load a class without locking it."""
        cls = await self.scalar(select(ClassModel).where(ClassModel.id == class_id), operation="get_class")
        if cls is None:
            raise EntityNotFoundError("Class", class_id)
        return cls

    async def execute(self, statement: Any, operation: str = "execute") -> Any:
        return await self._bounded(self.session.execute(statement), operation)

    async def scalar(self, statement: Select, operation: str = "scalar") -> Any:
        result = await self.execute(statement, operation)
        return result.scalars().first()

    async def scalars(self, statement: Select, operation: str = "scalars") -> list[Any]:
        result = await self.execute(statement, operation)
        return list(result.scalars().all())

    async def get(self, model: type[T], ident: str, operation: str = "get") -> T | None:
        return await self._bounded(self.session.get(model, ident), operation)

    def add(self, instance: Any) -> None:
        self.session.add(instance)

    async def delete(self, instance: Any) -> None:
        await self._bounded(self.session.delete(instance), "delete")

    async def flush(self) -> None:
        await self._bounded(self.session.flush(), "flush")

    async def refresh(self, instance: Any) -> None:
        await self._bounded(self.session.refresh(instance), "refresh")

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run callback once the transaction has committed (never on rollback)."""
        self._after_commit.append(callback)

    async def commit(self) -> None:
        await self._bounded(self.session.commit(), "commit")
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    async def rollback(self) -> None:
        self._after_commit.clear()
        try:
            await self._bounded(self.session.rollback(), "rollback")
        except (StoreTimeoutError, StoreUnavailableError):
            logger.warning("Rollback failed", unit_of_work=self.id)

    async def close(self) -> None:
        try:
            await self.session.close()
        finally:
            for class_id in reversed(self._locked_classes):
                self._store.lock_manager.release_lock(f"class:{class_id}", owner=self.id)
            self._locked_classes.clear()


class EnrollmentStore:
    """
    Injected handle on the backing store.

    Owns the session factory, the per-class lock manager and the timeouts
    applied to every call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager | None = None,
        timeout_seconds: float = 5.0,
        lock_wait_timeout_seconds: float = 10.0,
    ):
        """
        Initialize store.

        Args:
            session_factory: Factory producing AsyncSession instances
            lock_manager: Per-class lock manager (a new one by default)
            timeout_seconds: Bound for each store call
            lock_wait_timeout_seconds: Bound for waiting on a class lock
        """
        self.session_factory = session_factory
        self.lock_manager = lock_manager or LockManager()
        self.timeout_seconds = timeout_seconds
        self.lock_wait_timeout_seconds = lock_wait_timeout_seconds

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        """
        Open a unit of work.

        Yields:
            UnitOfWork: committed on normal exit, rolled back otherwise
        """
        uow = UnitOfWork(self, self.session_factory())
        try:
            yield uow
            await uow.commit()
        except BaseException:
            await uow.rollback()
            raise
        finally:
            await uow.close()

    @asynccontextmanager
    async def join(self, uow: UnitOfWork | None) -> AsyncIterator[UnitOfWork]:
        """Reuse the caller's unit of work, or open a new one."""
        if uow is not None:
            yield uow
            return
        async with self.transaction() as new_uow:
            yield new_uow
