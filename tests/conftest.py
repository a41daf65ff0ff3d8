"""Pytest configuration and shared fixtures.

Every test gets an isolated SQLite database (aiosqlite), a controllable
clock and a notification sender that records what it was asked to send.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from services.enrollment_service.engine import EnrollmentEngine, build_enrollment_engine
from services.enrollment_service.facts import StaticFactsProvider
from services.enrollment_service.notifications import Notification
from services.enrollment_service.schemas import StudentFacts
from shared.config import Settings
from shared.database import close_db, create_engine, create_session_factory, init_db
from shared.logging import setup_logging
from shared.security.rbac import Principal, Role

INSTITUTION_ID = "inst-1"
INSTRUCTOR_ID = "teacher-1"


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotificationSender:
    """Keeps every notification instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def of_type(self, notification_type: Any) -> list[Notification]:
        return [n for n in self.sent if n.type == notification_type]


class FailingNotificationSender:
    """Sender whose channel is down."""

    async def send(self, notification: Notification) -> None:
        raise ConnectionError("notification channel unavailable")


class FailingFactsProvider:
    """Facts service that is down for the listed students."""

    def __init__(self, failing: set[str]):
        self.failing = failing

    async def get_facts(self, student_id: str, institution_id: str) -> StudentFacts:
        if student_id in self.failing:
            raise ConnectionError("facts service down")
        return StudentFacts(student_id=student_id, institution_id=institution_id)


# =============================================================================
# Infrastructure fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        store_timeout_seconds=30.0,
        lock_wait_timeout_seconds=60.0,
        facts_timeout_seconds=1.0,
    )


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Route structlog output through the application processor chain."""
    setup_logging(Settings(_env_file=None, environment="test", log_level="WARNING"))


@pytest.fixture
async def db_engine(tmp_path, settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'enrollment.db'}", settings=settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 12, 9, 0, 0))


@pytest.fixture
def sender() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture
def facts() -> StaticFactsProvider:
    return StaticFactsProvider()


@pytest.fixture
async def enrollment(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    facts: StaticFactsProvider,
    sender: RecordingNotificationSender,
    clock: FakeClock,
) -> AsyncGenerator[EnrollmentEngine, None]:
    """Fully wired enrollment engine over the test database."""
    engine = build_enrollment_engine(
        session_factory,
        settings,
        facts_provider=facts,
        notification_sender=sender,
        clock=clock,
    )
    yield engine
    await engine.shutdown()


# =============================================================================
# Principals
# =============================================================================


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="admin-1", institution_id=INSTITUTION_ID, role=Role.INSTITUTION_ADMIN)


@pytest.fixture
def teacher() -> Principal:
    return Principal(user_id=INSTRUCTOR_ID, institution_id=INSTITUTION_ID, role=Role.TEACHER)


@pytest.fixture
def department_admin() -> Principal:
    return Principal(user_id="dept-admin-1", institution_id=INSTITUTION_ID, role=Role.DEPARTMENT_ADMIN)


def student(student_id: str, institution_id: str = INSTITUTION_ID) -> Principal:
    """Principal for a student acting for themselves."""
    return Principal(user_id=student_id, institution_id=institution_id, role=Role.STUDENT)


@pytest.fixture
def make_class(
    enrollment: EnrollmentEngine, admin: Principal
) -> Callable[..., Awaitable[str]]:
    """Factory creating a class owned by INSTRUCTOR_ID; keyword arguments are config fields."""

    async def _make(name: str = "Algorithms", **config: Any) -> str:
        return await enrollment.catalog.create_class(
            admin,
            INSTITUTION_ID,
            name,
            config,
            instructor_id=INSTRUCTOR_ID,
        )

    return _make
