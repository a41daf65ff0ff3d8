"""
Enrollment Engine Assembly

Wires the enrollment components around one injected store. Each call to
build_enrollment_engine() produces an independent engine with its own
lock manager and notification dispatcher.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.enrollment_service.approval import ApprovalWorkflow
from services.enrollment_service.audit import EnrollmentAuditLog
from services.enrollment_service.capacity import CapacityManager
from services.enrollment_service.catalog import ClassCatalog
from services.enrollment_service.conflicts import ConflictDetector, ConflictResolver
from services.enrollment_service.facts import StaticFactsProvider, StudentFactsProvider
from services.enrollment_service.notifications import NotificationDispatcher, NotificationSender
from services.enrollment_service.orchestrator import EnrollmentOrchestrator
from services.enrollment_service.overrides import OverrideService
from services.enrollment_service.rules import RulesEngine
from services.enrollment_service.store import EnrollmentStore
from services.enrollment_service.tenant_policy import TenantEnrollmentPolicy, TenantPolicyRegistry
from shared.concurrency.locking import LockManager
from shared.config import Settings, get_settings
from shared.domain.clock import Clock, utc_now
from shared.security.rbac import RBACService

logger = structlog.get_logger(__name__)


@dataclass
class EnrollmentEngine:
    """All enrollment components sharing one store, clock and policy registry."""

    store: EnrollmentStore
    policies: TenantPolicyRegistry
    rules: RulesEngine
    audit: EnrollmentAuditLog
    notifier: NotificationDispatcher
    capacity: CapacityManager
    approvals: ApprovalWorkflow
    orchestrator: EnrollmentOrchestrator
    catalog: ClassCatalog
    detector: ConflictDetector
    resolver: ConflictResolver
    overrides: OverrideService

    async def shutdown(self) -> None:
        """Wait for in-flight notifications."""
        await self.notifier.drain()


def build_enrollment_engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    *,
    facts_provider: StudentFactsProvider | None = None,
    notification_sender: NotificationSender | None = None,
    clock: Clock = utc_now,
    tenant_policies: dict[str, TenantEnrollmentPolicy] | None = None,
    detect_prerequisite_violations: bool | None = None,
) -> EnrollmentEngine:
    """
    Build an enrollment engine.

    Args:
        session_factory: Session factory for the backing store
        settings: Settings (defaults to the cached application settings)
        facts_provider: Source of student academic facts
        notification_sender: Outbound notification channel (logs only by default)
        clock: Source of the current instant
        tenant_policies: Per-institution policy overrides
        detect_prerequisite_violations: Let the conflict sweep re-check
            prerequisites; defaults to whether a facts provider was given

    Returns:
        EnrollmentEngine
    """
    settings = settings or get_settings()
    rbac = RBACService()

    store = EnrollmentStore(
        session_factory,
        lock_manager=LockManager(clock=clock),
        timeout_seconds=settings.store_timeout_seconds,
        lock_wait_timeout_seconds=settings.lock_wait_timeout_seconds,
    )
    policies = TenantPolicyRegistry(settings, tenant_policies)
    rules = RulesEngine()
    audit = EnrollmentAuditLog(store, clock=clock)
    notifier = NotificationDispatcher(notification_sender)

    if detect_prerequisite_violations is None:
        detect_prerequisite_violations = facts_provider is not None
    facts = facts_provider or StaticFactsProvider()

    capacity = CapacityManager(store, audit, notifier, policies, clock=clock)
    approvals = ApprovalWorkflow(store, capacity, audit, notifier, policies, rbac=rbac, clock=clock)
    orchestrator = EnrollmentOrchestrator(
        store,
        rules,
        capacity,
        approvals,
        audit,
        facts,
        notifier,
        rbac=rbac,
        clock=clock,
        facts_timeout_seconds=settings.facts_timeout_seconds,
    )

    engine = EnrollmentEngine(
        store=store,
        policies=policies,
        rules=rules,
        audit=audit,
        notifier=notifier,
        capacity=capacity,
        approvals=approvals,
        orchestrator=orchestrator,
        catalog=ClassCatalog(store, capacity, rbac=rbac),
        detector=ConflictDetector(
            store,
            policies,
            rules=rules,
            facts_provider=facts if detect_prerequisite_violations else None,
            clock=clock,
            facts_timeout_seconds=settings.facts_timeout_seconds,
        ),
        resolver=ConflictResolver(store, rbac=rbac, clock=clock),
        overrides=OverrideService(store, orchestrator, capacity, audit, policies, rbac=rbac, clock=clock),
    )
    logger.info(
        "Enrollment engine built",
        environment=settings.environment,
        prerequisite_sweep=detect_prerequisite_violations,
    )
    return engine
