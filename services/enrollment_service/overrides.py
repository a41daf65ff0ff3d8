"""
Enrollment Overrides

Staff-initiated exceptions to the normal enrollment path. What a role may
request, whether the request needs a second approver, and how many requests
it may make per period come from the tenant's capability table.

Override types:
- capacity_override: one seat beyond nominal capacity
- prerequisite_override / enrollment_override: bypass eligibility and mode gates
- deadline_override: bypass only the enrollment window
"""

from datetime import timedelta

import structlog
from sqlalchemy import func, select

from services.enrollment_service.audit import EnrollmentAuditLog
from services.enrollment_service.capacity import CapacityManager
from services.enrollment_service.models import OverrideRequestModel
from services.enrollment_service.orchestrator import EnrollmentOrchestrator
from services.enrollment_service.schemas import (
    AuditAction,
    EnrollmentState,
    OverrideResult,
    OverrideStatus,
    OverrideType,
    Rejected,
    Waitlisted,
)
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from services.enrollment_service.tenant_policy import OverrideCapability, TenantPolicyRegistry
from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    AuthorizationError,
    BusinessRuleViolationError,
    DomainException,
    EntityNotFoundError,
    ErrorCategory,
    InvalidStateTransitionError,
    ValidationError,
)
from shared.security.rbac import Principal, RBACService

logger = structlog.get_logger(__name__)


class OverrideService:
    """Requests, approves, denies and applies enrollment overrides."""

    def __init__(
        self,
        store: EnrollmentStore,
        orchestrator: EnrollmentOrchestrator,
        capacity: CapacityManager,
        audit: EnrollmentAuditLog,
        policies: TenantPolicyRegistry,
        rbac: RBACService | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.capacity = capacity
        self.audit = audit
        self.policies = policies
        self.rbac = rbac or RBACService()
        self.clock = clock

    def get_override_capabilities(self, principal: Principal) -> list[OverrideCapability]:
        """Override capabilities of the principal's role in their institution."""
        return self.policies.get(principal.institution_id).capabilities_for(principal.role)

    async def request_override(
        self,
        principal: Principal,
        student_id: str,
        class_id: str,
        override_type: OverrideType,
        reason: str | None = None,
    ) -> OverrideResult:
        """
        Request an override for one student in one class.

        Applied at once when the principal's capability needs no approval;
        otherwise left pending for an approver.

        Args:
            principal: Requesting staff member
            student_id: Student the override is for
            class_id: Target class
            override_type: Kind of override
            reason: Justification (mandatory where the capability says so)

        Returns:
            OverrideResult
        """
        try:
            capability = self.policies.get(principal.institution_id).capability_for(
                principal.role, override_type
            )
            if capability is None:
                raise AuthorizationError(
                    f"{principal.role.value} may not request {override_type.value}",
                    resource="override",
                    action="request",
                )
            if capability.requires_justification and not (reason and reason.strip()):
                raise ValidationError(
                    f"A justification is required for {override_type.value}",
                    field="reason",
                    code="justification_required",
                )

            async with self.store.transaction() as tx:
                cls = await tx.lock_class(class_id)
                self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "request override")
                await self._check_quota(tx, principal, override_type, capability)

                now = self.clock()
                override = OverrideRequestModel(
                    institution_id=cls.institution_id,
                    student_id=student_id,
                    class_id=class_id,
                    override_type=override_type.value,
                    reason=reason or "",
                    requested_by=principal.user_id,
                    requester_role=principal.role.value,
                    status=OverrideStatus.PENDING.value,
                    requested_at=now,
                )
                tx.add(override)
                await tx.flush()

                logger.info(
                    "Override requested",
                    override_id=override.id,
                    override_type=override_type.value,
                    class_id=class_id,
                    student_id=student_id,
                    requested_by=principal.user_id,
                )

                if capability.requires_approval:
                    return OverrideResult(
                        success=True,
                        code="override_pending",
                        message="Override request submitted for approval",
                        override_id=override.id,
                        status=OverrideStatus.PENDING,
                    )

                state = await self._apply(tx, override, principal)
                self._decide(override, principal, OverrideStatus.APPROVED, "Applied without approval")
                return OverrideResult(
                    success=True,
                    code="override_applied",
                    message=f"{override_type.value} applied",
                    override_id=override.id,
                    status=OverrideStatus.APPROVED,
                    applied_state=state,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return OverrideResult.from_exception(exc)

    async def approve_override(
        self, override_id: str, approver: Principal, notes: str | None = None
    ) -> OverrideResult:
        """
        Approve a pending override and apply it.

        If applying fails the whole decision rolls back and the override
        stays pending.
        """
        try:
            async with self.store.transaction() as tx:
                override = await self._load_pending(tx, override_id)
                self._require_approver(override, approver)

                state = await self._apply(tx, override, approver)
                self._decide(override, approver, OverrideStatus.APPROVED, notes)
                logger.info("Override approved", override_id=override.id, approver=approver.user_id)
                return OverrideResult(
                    success=True,
                    code="override_approved",
                    message=f"{override.override_type} approved and applied",
                    override_id=override.id,
                    status=OverrideStatus.APPROVED,
                    applied_state=state,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return OverrideResult.from_exception(exc, override_id=override_id)

    async def deny_override(self, override_id: str, approver: Principal, reason: str) -> OverrideResult:
        try:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to deny an override", field="reason", code="reason_required")

            async with self.store.transaction() as tx:
                override = await self._load_pending(tx, override_id)
                self._require_approver(override, approver)
                self._decide(override, approver, OverrideStatus.DENIED, reason)
                logger.info("Override denied", override_id=override.id, approver=approver.user_id)
                return OverrideResult(
                    success=True,
                    code="override_denied",
                    message="Override request denied",
                    override_id=override.id,
                    status=OverrideStatus.DENIED,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return OverrideResult.from_exception(exc, override_id=override_id)

    async def _apply(self, tx: UnitOfWork, override: OverrideRequestModel, principal: Principal) -> EnrollmentState:
        override_type = OverrideType(override.override_type)

        if override_type is OverrideType.CAPACITY_OVERRIDE:
            await self.capacity.force_allocate(
                override.class_id, override.student_id, principal.user_id, reason=override.reason, uow=tx
            )
            state = EnrollmentState.ENROLLED
        else:
            allocation = await self.orchestrator.force_enroll(
                tx,
                override.student_id,
                override.class_id,
                principal.user_id,
                override_type.value,
                window_only=override_type is OverrideType.DEADLINE_OVERRIDE,
            )
            if isinstance(allocation, Rejected):
                raise BusinessRuleViolationError(
                    f"{override_type.value} could not be applied: {allocation.reason}",
                    rule_name=allocation.reason,
                )
            state = EnrollmentState.WAITLISTED if isinstance(allocation, Waitlisted) else EnrollmentState.ENROLLED

        await self.audit.record(
            tx,
            student_id=override.student_id,
            class_id=override.class_id,
            action=AuditAction.OVERRIDE_APPLIED,
            performed_by=principal.user_id,
            reason=override.reason or None,
            new_status=state.value,
            details={"override_id": override.id, "override_type": override_type.value},
        )
        return state

    def _decide(
        self,
        override: OverrideRequestModel,
        principal: Principal,
        status: OverrideStatus,
        notes: str | None,
    ) -> None:
        override.status = status.value
        override.decided_by = principal.user_id
        override.decided_at = self.clock()
        override.notes = notes

    async def _load_pending(self, tx: UnitOfWork, override_id: str) -> OverrideRequestModel:
        override = await tx.get(OverrideRequestModel, override_id)
        if override is None:
            raise EntityNotFoundError("Override", override_id)
        await tx.lock_class(override.class_id)
        await tx.refresh(override)
        if override.status != OverrideStatus.PENDING.value:
            raise InvalidStateTransitionError(
                f"Override is already {override.status}",
                current_state=override.status,
                code="override_not_pending",
            )
        return override

    def _require_approver(self, override: OverrideRequestModel, approver: Principal) -> None:
        if not self.rbac.same_tenant(approver, override.institution_id):
            raise AuthorizationError(
                "Approver belongs to another institution", resource="override", action="approve"
            )
        capability = self.policies.get(override.institution_id).capability_for(
            approver.role, OverrideType(override.override_type)
        )
        if capability is None or not capability.can_approve:
            raise AuthorizationError(
                f"{approver.role.value} may not approve {override.override_type}",
                resource="override",
                action="approve",
            )
        if approver.user_id == override.requested_by:
            raise AuthorizationError(
                "An override cannot be approved by its requester", resource="override", action="approve"
            )

    async def _check_quota(
        self,
        tx: UnitOfWork,
        principal: Principal,
        override_type: OverrideType,
        capability: OverrideCapability,
    ) -> None:
        if capability.max_per_period is None:
            return

        since = self.clock() - timedelta(days=capability.period_days)
        result = await tx.execute(
            select(func.count()).select_from(OverrideRequestModel).where(
                OverrideRequestModel.requested_by == principal.user_id,
                OverrideRequestModel.override_type == override_type.value,
                OverrideRequestModel.status.in_(
                    (OverrideStatus.PENDING.value, OverrideStatus.APPROVED.value)
                ),
                OverrideRequestModel.requested_at >= since,
            ),
            operation="override_quota",
        )
        used = result.scalar_one()
        if used >= capability.max_per_period:
            raise BusinessRuleViolationError(
                f"Limit of {capability.max_per_period} {override_type.value} requests "
                f"per {capability.period_days} days reached",
                rule_name="override_quota_exceeded",
            )
