"""
Enrollment Conflict Detection

Periodic sweep over an institution's enrollment data:
- Capacity violations (enrolled rows beyond capacity plus granted override seats)
- Suspicious activity (many distinct classes, or a burst, in a short window)
- Prerequisite violations of enrolled students under current facts

The sweep takes no class locks and only ever creates ConflictRecords, each in
its own transaction. Resolving a conflict records what was done; it never
changes enrollments.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, func, select

from services.enrollment_service.facts import StudentFactsProvider
from services.enrollment_service.models import (
    ClassModel,
    ConflictRecordModel,
    ConflictResolutionModel,
    EnrollmentAuditLogModel,
    EnrollmentModel,
    PrerequisiteModel,
    RestrictionModel,
)
from services.enrollment_service.rules import RulesEngine
from services.enrollment_service.schemas import (
    SEATED_ENROLLMENT_STATUSES,
    AuditAction,
    ClassRules,
    ConflictRecord,
    ConflictResolution,
    ConflictSeverity,
    ConflictStatus,
    ConflictType,
    EnrollmentStatus,
    PrerequisiteRule,
    PrerequisiteType,
    ResolutionResult,
    RestrictionRule,
    RestrictionType,
)
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from services.enrollment_service.tenant_policy import TenantEnrollmentPolicy, TenantPolicyRegistry
from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    DomainException,
    EntityNotFoundError,
    ErrorCategory,
    InvalidStateTransitionError,
)
from shared.security.rbac import Principal, RBACService

logger = structlog.get_logger(__name__)


@dataclass
class DetectedConflict:
    """A conflict found by the sweep, before it is persisted."""

    fingerprint: str
    type: ConflictType
    severity: ConflictSeverity
    description: str
    affected_students: int
    class_id: str | None = None
    student_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def max_in_window(timestamps: list[datetime], window: timedelta) -> int:
    """Largest number of timestamps falling inside any window of the given width."""
    ordered = sorted(timestamps)
    best = 0
    start = 0
    for end, current in enumerate(ordered):
        while current - ordered[start] > window:
            start += 1
        best = max(best, end - start + 1)
    return best


class ConflictDetector:
    """
    Sweeps an institution for enrollment conflicts.

    Store failures never escape a sweep: they are logged and the sweep
    reports nothing. Cancellation is propagated.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        policies: TenantPolicyRegistry,
        rules: RulesEngine | None = None,
        facts_provider: StudentFactsProvider | None = None,
        clock: Clock = utc_now,
        facts_timeout_seconds: float = 3.0,
    ):
        self.store = store
        self.policies = policies
        self.rules = rules or RulesEngine()
        self.facts_provider = facts_provider
        self.clock = clock
        self.facts_timeout_seconds = facts_timeout_seconds
        self._sweep_lock = asyncio.Lock()

    async def detect_conflicts(self, institution_id: str) -> list[ConflictRecord]:
        """
        Run one sweep.

        Args:
            institution_id: Institution to sweep

        Returns:
            Open conflicts found by this sweep (existing open records with
            the same fingerprint are returned instead of duplicated)
        """
        async with self._sweep_lock:
            try:
                found = await self._scan(institution_id)
            except Exception as e:
                logger.error("Conflict sweep failed", institution_id=institution_id, error=str(e))
                return []

            records: list[ConflictRecord] = []
            for conflict in found:
                try:
                    records.append(await self._persist(institution_id, conflict))
                except Exception as e:
                    logger.error(
                        "Failed to record conflict",
                        institution_id=institution_id,
                        fingerprint=conflict.fingerprint,
                        error=str(e),
                    )

            logger.info(
                "Conflict sweep completed",
                institution_id=institution_id,
                detected=len(found),
                recorded=len(records),
            )
            return records

    async def _scan(self, institution_id: str) -> list[DetectedConflict]:
        policy = self.policies.get(institution_id)
        async with self.store.transaction() as tx:
            found = await self._capacity_violations(tx, institution_id)
            found.extend(await self._suspicious_activity(tx, institution_id, policy))
            if self.facts_provider is not None:
                found.extend(await self._prerequisite_violations(tx, institution_id))
        return found

    async def _capacity_violations(self, tx: UnitOfWork, institution_id: str) -> list[DetectedConflict]:
        rows = await tx.execute(
            select(
                ClassModel.id,
                ClassModel.name,
                ClassModel.capacity,
                ClassModel.override_seats,
                func.count(EnrollmentModel.id),
            )
            .join(
                EnrollmentModel,
                and_(
                    EnrollmentModel.class_id == ClassModel.id,
                    EnrollmentModel.status.in_(SEATED_ENROLLMENT_STATUSES),
                ),
            )
            .where(ClassModel.institution_id == institution_id)
            .group_by(ClassModel.id, ClassModel.name, ClassModel.capacity, ClassModel.override_seats),
            operation="capacity_scan",
        )

        found = []
        for class_id, name, capacity, override_seats, enrolled in rows.all():
            allowed = capacity + override_seats
            if enrolled <= allowed:
                continue
            found.append(DetectedConflict(
                fingerprint=f"capacity-violation-{class_id}",
                type=ConflictType.CAPACITY_EXCEEDED,
                severity=ConflictSeverity.HIGH,
                description=f"Class {name} has {enrolled} students enrolled but capacity is {allowed}",
                affected_students=enrolled - allowed,
                class_id=class_id,
                details={"enrolled": enrolled, "capacity": capacity, "override_seats": override_seats},
            ))
        return found

    async def _suspicious_activity(
        self, tx: UnitOfWork, institution_id: str, policy: TenantEnrollmentPolicy
    ) -> list[DetectedConflict]:
        now = self.clock()
        window = timedelta(hours=policy.suspicious_window_hours)
        burst_window = timedelta(minutes=policy.bulk_window_minutes)

        rows = await tx.execute(
            select(
                EnrollmentAuditLogModel.student_id,
                EnrollmentAuditLogModel.class_id,
                EnrollmentAuditLogModel.timestamp,
            )
            .join(ClassModel, ClassModel.id == EnrollmentAuditLogModel.class_id)
            .where(
                ClassModel.institution_id == institution_id,
                EnrollmentAuditLogModel.action == AuditAction.ENROLLED.value,
                EnrollmentAuditLogModel.timestamp >= now - max(window, burst_window),
            ),
            operation="activity_scan",
        )

        activity: dict[str, list[tuple[str, datetime]]] = defaultdict(list)
        for student_id, class_id, timestamp in rows.all():
            activity[student_id].append((class_id, timestamp))

        found = []
        for student_id, events in sorted(activity.items()):
            classes = {class_id for class_id, timestamp in events if timestamp >= now - window}
            if len(classes) > policy.suspicious_enrollment_threshold:
                found.append(DetectedConflict(
                    fingerprint=f"suspicious-activity-{student_id}",
                    type=ConflictType.SUSPICIOUS_ACTIVITY,
                    severity=ConflictSeverity.MEDIUM,
                    description=(
                        f"Student {student_id} has enrolled in {len(classes)} classes "
                        f"in the last {policy.suspicious_window_hours} hours"
                    ),
                    affected_students=1,
                    student_id=student_id,
                    details={"class_count": len(classes), "window_hours": policy.suspicious_window_hours},
                ))

            burst = max_in_window([timestamp for _, timestamp in events], burst_window)
            if burst > policy.bulk_window_threshold:
                found.append(DetectedConflict(
                    fingerprint=f"enrollment-burst-{student_id}",
                    type=ConflictType.SUSPICIOUS_ACTIVITY,
                    severity=ConflictSeverity.LOW,
                    description=(
                        f"Student {student_id} made {burst} enrollments "
                        f"within {policy.bulk_window_minutes} minutes"
                    ),
                    affected_students=1,
                    student_id=student_id,
                    details={"enrollments": burst, "window_minutes": policy.bulk_window_minutes},
                ))
        return found

    async def _prerequisite_violations(self, tx: UnitOfWork, institution_id: str) -> list[DetectedConflict]:
        classes = await tx.scalars(
            select(ClassModel).where(ClassModel.institution_id == institution_id),
            operation="class_scan",
        )

        found = []
        for cls in classes:
            rules = await self._class_rules(tx, cls)
            if not rules.prerequisites and not rules.restrictions:
                continue

            enrollments = await tx.scalars(
                select(EnrollmentModel).where(
                    EnrollmentModel.class_id == cls.id,
                    EnrollmentModel.status == EnrollmentStatus.ENROLLED.value,
                    EnrollmentModel.via_override.is_(None),
                ),
                operation="enrolled_scan",
            )
            for enrollment in enrollments:
                try:
                    async with asyncio.timeout(self.facts_timeout_seconds):
                        facts = await self.facts_provider.get_facts(enrollment.student_id, institution_id)
                except TimeoutError:
                    logger.warning(
                        "Student facts timed out during sweep",
                        student_id=enrollment.student_id,
                        class_id=cls.id,
                    )
                    continue
                except Exception as exc:
                    logger.warning(
                        "Student facts unavailable during sweep",
                        student_id=enrollment.student_id,
                        class_id=cls.id,
                        error=str(exc),
                    )
                    continue

                result = self.rules.evaluate_eligibility(facts, rules, self.clock(), include_window=False)
                if result.eligible:
                    continue
                found.append(DetectedConflict(
                    fingerprint=f"prerequisite-violation-{cls.id}-{enrollment.student_id}",
                    type=ConflictType.PREREQUISITE_VIOLATION,
                    severity=ConflictSeverity.MEDIUM,
                    description=(
                        f"Student {enrollment.student_id} is enrolled in {cls.name} "
                        "without meeting its requirements"
                    ),
                    affected_students=1,
                    class_id=cls.id,
                    student_id=enrollment.student_id,
                    details={"reasons": [reason.type for reason in result.blocking_reasons]},
                ))
        return found

    async def _class_rules(self, tx: UnitOfWork, cls: ClassModel) -> ClassRules:
        prerequisites = await tx.scalars(
            select(PrerequisiteModel).where(
                PrerequisiteModel.class_id == cls.id,
                PrerequisiteModel.strict.is_(True),
            ),
            operation="class_prerequisites",
        )
        restrictions = await tx.scalars(
            select(RestrictionModel).where(
                RestrictionModel.class_id == cls.id,
                RestrictionModel.overridable.is_(False),
            ),
            operation="class_restrictions",
        )
        return ClassRules(
            class_id=cls.id,
            institution_id=cls.institution_id,
            prerequisites=[
                PrerequisiteRule(type=PrerequisiteType(p.type), requirement=p.requirement, strict=True)
                for p in prerequisites
            ],
            restrictions=[
                RestrictionRule(type=RestrictionType(r.type), condition=r.condition)
                for r in restrictions
            ],
        )

    async def _persist(self, institution_id: str, conflict: DetectedConflict) -> ConflictRecord:
        async with self.store.transaction() as tx:
            existing = await tx.scalar(
                select(ConflictRecordModel).where(
                    ConflictRecordModel.institution_id == institution_id,
                    ConflictRecordModel.fingerprint == conflict.fingerprint,
                    ConflictRecordModel.status == ConflictStatus.OPEN.value,
                ),
                operation="open_conflict",
            )
            if existing is not None:
                return ConflictRecord.model_validate(existing)

            record = ConflictRecordModel(
                institution_id=institution_id,
                fingerprint=conflict.fingerprint,
                type=conflict.type.value,
                severity=conflict.severity.value,
                description=conflict.description,
                affected_students=conflict.affected_students,
                class_id=conflict.class_id,
                student_id=conflict.student_id,
                details=conflict.details,
                status=ConflictStatus.OPEN.value,
                detected_at=self.clock(),
            )
            tx.add(record)
            await tx.flush()

            logger.warning(
                "Enrollment conflict detected",
                conflict_id=record.id,
                type=conflict.type.value,
                severity=conflict.severity.value,
                fingerprint=conflict.fingerprint,
            )
            return ConflictRecord.model_validate(record)


class ConflictResolver:
    """Records resolutions of detected conflicts. Administrators only."""

    def __init__(self, store: EnrollmentStore, rbac: RBACService | None = None, clock: Clock = utc_now):
        self.store = store
        self.rbac = rbac or RBACService()
        self.clock = clock

    async def resolve_conflict(
        self, conflict_id: str, resolution: ConflictResolution, principal: Principal
    ) -> ResolutionResult:
        """
        Mark a conflict resolved and log what was done about it.

        Args:
            conflict_id: Conflict to resolve
            resolution: Resolution type, description and action taken
            principal: Acting administrator

        Returns:
            ResolutionResult
        """
        try:
            async with self.store.transaction() as tx:
                record = await tx.get(ConflictRecordModel, conflict_id)
                if record is None:
                    raise EntityNotFoundError("Conflict", conflict_id)
                self.rbac.require_admin(principal, record.institution_id, "resolve conflict")
                if record.status == ConflictStatus.RESOLVED.value:
                    raise InvalidStateTransitionError(
                        "Conflict is already resolved",
                        current_state=record.status,
                        code="conflict_already_resolved",
                    )

                now = self.clock()
                tx.add(ConflictResolutionModel(
                    conflict_id=record.id,
                    resolution_type=resolution.resolution_type.value,
                    description=resolution.description,
                    action_taken=resolution.action_taken,
                    resolved_by=principal.user_id,
                    resolved_at=now,
                    affected_students=list(resolution.affected_students),
                    notes=resolution.notes,
                ))
                record.status = ConflictStatus.RESOLVED.value
                record.resolved_at = now
                await tx.flush()

                logger.info(
                    "Conflict resolved",
                    conflict_id=record.id,
                    resolution_type=resolution.resolution_type.value,
                    resolved_by=principal.user_id,
                )
                return ResolutionResult(
                    success=True,
                    code="resolved",
                    message="Conflict resolved",
                    conflict_id=record.id,
                    status=ConflictStatus.RESOLVED,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return ResolutionResult.from_exception(exc, conflict_id=conflict_id)

    async def list_conflicts(
        self, institution_id: str, status: ConflictStatus | None = ConflictStatus.OPEN
    ) -> list[ConflictRecord]:
        statement = select(ConflictRecordModel).where(ConflictRecordModel.institution_id == institution_id)
        if status is not None:
            statement = statement.where(ConflictRecordModel.status == status.value)
        async with self.store.transaction() as tx:
            rows = await tx.scalars(
                statement.order_by(ConflictRecordModel.detected_at), operation="list_conflicts"
            )
            return [ConflictRecord.model_validate(row) for row in rows]
