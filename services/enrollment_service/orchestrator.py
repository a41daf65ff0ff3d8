"""
Enrollment Orchestrator

State machine for a single enrollment request:

    requested -> eligibility_failed | enrolled | waitlisted | pending_approval
    pending_approval -> enrolled | waitlisted | denied | expired
    enrolled -> dropped | completed

Each request runs in one unit of work: the existing-record check,
eligibility, allocation and audit writes commit or roll back together.
"""

import asyncio
from datetime import timedelta
from functools import partial
from typing import assert_never

import structlog
from sqlalchemy import select

from services.enrollment_service.approval import ApprovalWorkflow
from services.enrollment_service.audit import EnrollmentAuditLog
from services.enrollment_service.capacity import (
    CapacityManager,
    estimate_enrollment_probability,
    estimate_wait_time,
)
from services.enrollment_service.facts import StudentFactsProvider
from services.enrollment_service.models import (
    ClassInvitationModel,
    ClassModel,
    EnrollmentModel,
    PrerequisiteModel,
    RestrictionModel,
)
from services.enrollment_service.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationType,
)
from services.enrollment_service.rules import RulesEngine
from services.enrollment_service.schemas import (
    ACTIVE_ENROLLMENT_STATUSES,
    AllocationResult,
    AuditAction,
    BulkEnrollmentItem,
    BulkEnrollmentResult,
    BulkSummary,
    ClassRules,
    EligibilityResult,
    Enrolled,
    EnrollmentMode,
    EnrollmentResult,
    EnrollmentState,
    EnrollmentStatus,
    PrerequisiteRule,
    PrerequisiteType,
    Rejected,
    RestrictionRule,
    RestrictionType,
    StudentFacts,
    Waitlisted,
)
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    DomainException,
    EntityNotFoundError,
    ErrorCategory,
    ExternalServiceError,
    InvalidStateTransitionError,
)
from shared.logging import bind_request_context, clear_request_context
from shared.security.rbac import Principal, RBACService

logger = structlog.get_logger(__name__)


def allocation_to_result(allocation: AllocationResult) -> EnrollmentResult:
    """Map a capacity outcome to the caller-facing result."""
    if isinstance(allocation, Enrolled):
        return EnrollmentResult(
            success=True,
            code="enrolled",
            message="Successfully enrolled",
            state=EnrollmentState.ENROLLED,
            enrollment_id=allocation.enrollment_id,
        )
    if isinstance(allocation, Waitlisted):
        return EnrollmentResult(
            success=True,
            code="waitlisted",
            message=f"Class is full; added to the waitlist at position {allocation.position}",
            state=EnrollmentState.WAITLISTED,
            enrollment_id=allocation.enrollment_id,
            waitlist_position=allocation.position,
            estimated_probability=allocation.estimated_probability,
            estimated_wait_time=estimate_wait_time(allocation.position),
            next_steps=["You will be notified when a seat becomes available"],
        )
    return EnrollmentResult(
        success=False,
        code=allocation.reason,
        message="Class and waitlist are full",
        category=ErrorCategory.CONFLICT,
        state=EnrollmentState.REJECTED,
    )


class EnrollmentOrchestrator:
    """
    Entry point for student-facing enrollment operations.

    Composes the rules engine, capacity manager, approval workflow and
    audit log. Every error except system failures comes back as a typed
    result; system failures propagate after the unit of work rolls back.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        rules: RulesEngine,
        capacity: CapacityManager,
        approvals: ApprovalWorkflow,
        audit: EnrollmentAuditLog,
        facts_provider: StudentFactsProvider,
        notifier: NotificationDispatcher,
        rbac: RBACService | None = None,
        clock: Clock = utc_now,
        facts_timeout_seconds: float = 3.0,
        invitation_ttl_days: int = 14,
    ):
        self.store = store
        self.rules = rules
        self.capacity = capacity
        self.approvals = approvals
        self.audit = audit
        self.facts_provider = facts_provider
        self.notifier = notifier
        self.rbac = rbac or RBACService()
        self.clock = clock
        self.facts_timeout_seconds = facts_timeout_seconds
        self.invitation_ttl_days = invitation_ttl_days

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_enrollment(
        self,
        principal: Principal,
        student_id: str,
        class_id: str,
        justification: str | None = None,
    ) -> EnrollmentResult:
        """
        Run one enrollment request through the state machine.

        Process:
        1. Return the existing state if the student already has an active record
        2. Evaluate eligibility; blocking reasons end in eligibility_failed
        3. Branch on the class's enrollment mode

        Args:
            principal: Acting principal (the student, or staff acting for them)
            student_id: Student to enroll
            class_id: Target class
            justification: Free text for restricted classes

        Returns:
            EnrollmentResult
        """
        bind_request_context(principal_id=principal.user_id, institution_id=principal.institution_id)
        try:
            async with self.store.transaction() as tx:
                return await self._request_enrollment(tx, principal, student_id, class_id, justification)
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)
        finally:
            clear_request_context()

    async def _request_enrollment(
        self,
        tx: UnitOfWork,
        principal: Principal,
        student_id: str,
        class_id: str,
        justification: str | None,
    ) -> EnrollmentResult:
        cls = await tx.get_class(class_id)
        self.rbac.require_student_access(
            principal, student_id, cls.institution_id, cls.instructor_id, "request enrollment"
        )
        # Facts come from an external provider; fetch them before taking the lock
        facts = await self._load_facts(student_id, cls.institution_id)

        cls = await tx.lock_class(class_id)
        await self.capacity.expire_holds(class_id, uow=tx)
        existing = await self._existing_state(tx, cls, student_id)
        if existing is not None:
            return existing

        eligibility = self.rules.evaluate_eligibility(facts, await self._class_rules(tx, cls), self.clock())
        if not eligibility.eligible:
            return await self._eligibility_failed(tx, cls, student_id, principal, eligibility)

        mode = EnrollmentMode(cls.enrollment_mode)
        if mode is EnrollmentMode.OPEN:
            allocation = await self.capacity.allocate(
                cls.id, student_id, performed_by=principal.user_id, priority=facts.priority, uow=tx
            )
            result = allocation_to_result(allocation)
        elif mode is EnrollmentMode.RESTRICTED:
            result = await self.approvals.submit(
                tx, cls, student_id, principal.user_id, justification, facts.priority
            )
        elif mode is EnrollmentMode.INVITATION_ONLY:
            result = await self._invitation_gate(tx, cls, student_id, principal)
        else:
            assert_never(mode)

        if eligibility.reasons:
            result = result.model_copy(update={"reasons": eligibility.reasons})
        return result

    async def bulk_enroll(
        self, principal: Principal, student_ids: list[str], class_id: str
    ) -> BulkEnrollmentResult:
        """
        Enroll many students, one independent request each.

        Not atomic: a failure on one student never stops the others, and
        system errors are recorded as that student's internal_error result.
        """
        items: list[BulkEnrollmentItem] = []
        summary = BulkSummary()

        for student_id in student_ids:
            try:
                result = await self.request_enrollment(principal, student_id, class_id)
            except DomainException as exc:
                logger.error(
                    "Bulk enrollment item failed",
                    class_id=class_id,
                    student_id=student_id,
                    error=exc.message,
                )
                result = EnrollmentResult(
                    success=False,
                    code="internal_error",
                    message=exc.message,
                    category=ErrorCategory.SYSTEM,
                    details={"retryable": exc.retryable},
                )

            items.append(BulkEnrollmentItem(student_id=student_id, result=result))
            if result.state is EnrollmentState.ENROLLED:
                summary.enrolled += 1
            elif result.state is EnrollmentState.WAITLISTED:
                summary.waitlisted += 1
            elif result.state is EnrollmentState.PENDING_APPROVAL:
                summary.pending += 1
            elif not result.success:
                summary.rejected += 1

        successful = sum(1 for item in items if item.result.success)
        logger.info(
            "Bulk enrollment completed",
            class_id=class_id,
            total=len(items),
            successful=successful,
            enrolled=summary.enrolled,
            waitlisted=summary.waitlisted,
        )
        return BulkEnrollmentResult(
            total_processed=len(items),
            successful=successful,
            failed=len(items) - successful,
            results=items,
            summary=summary,
        )

    # ------------------------------------------------------------------
    # Drops and waitlist actions
    # ------------------------------------------------------------------

    async def drop_student(
        self,
        principal: Principal,
        student_id: str,
        class_id: str,
        reason: str | None = None,
        performed_by: str | None = None,
    ) -> EnrollmentResult:
        """
        Drop an enrolled student; the freed seat is offered to the waitlist.

        Students dropping themselves after the drop deadline are refused.
        """
        try:
            async with self.store.transaction() as tx:
                cls = await tx.lock_class(class_id)
                self.rbac.require_student_access(
                    principal, student_id, cls.institution_id, cls.instructor_id, "drop"
                )
                # Only staff may attribute the drop to someone else
                actor = (performed_by or principal.user_id) if principal.is_staff else principal.user_id

                if not principal.is_staff and cls.drop_deadline and self.clock() > cls.drop_deadline:
                    return EnrollmentResult(
                        success=False,
                        code="drop_deadline_passed",
                        message=f"The drop deadline passed on {cls.drop_deadline.isoformat()}",
                        category=ErrorCategory.EXPIRED,
                        state=EnrollmentState.ENROLLED,
                        next_steps=["Contact the instructor or an administrator"],
                    )

                enrollment = await self.capacity.release(
                    class_id, student_id, performed_by=actor, reason=reason, uow=tx
                )
                return EnrollmentResult(
                    success=True,
                    code="dropped",
                    message="Student dropped from class",
                    state=EnrollmentState.DROPPED,
                    enrollment_id=enrollment.id,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

    async def complete_enrollment(
        self, principal: Principal, student_id: str, class_id: str
    ) -> EnrollmentResult:
        """
        Mark an enrolled student as having completed the class.

        Completion keeps the seat taken, so the waitlist is not promoted.
        Only the class instructor or an administrator may complete.
        """
        try:
            async with self.store.transaction() as tx:
                cls = await tx.lock_class(class_id)
                self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "complete")
                enrollment = await self.capacity.complete(
                    class_id, student_id, performed_by=principal.user_id, uow=tx
                )
                return EnrollmentResult(
                    success=True,
                    code="completed",
                    message="Enrollment completed",
                    state=EnrollmentState.COMPLETED,
                    enrollment_id=enrollment.id,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

    async def complete_class(self, principal: Principal, class_id: str) -> list[str]:
        """
        Complete every enrolled student of a class in one unit of work.

        Returns:
            Ids of the students completed

        Raises:
            AuthorizationError: If principal does not teach or administer the class
        """
        async with self.store.transaction() as tx:
            cls = await tx.lock_class(class_id)
            self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "complete")
            enrolled = await tx.scalars(
                select(EnrollmentModel)
                .where(
                    EnrollmentModel.class_id == class_id,
                    EnrollmentModel.status == EnrollmentStatus.ENROLLED.value,
                )
                .order_by(EnrollmentModel.enrolled_at),
                operation="enrolled_for_completion",
            )
            student_ids = [enrollment.student_id for enrollment in enrolled]
            for student_id in student_ids:
                await self.capacity.complete(class_id, student_id, performed_by=principal.user_id, uow=tx)

        logger.info("Class completed", class_id=class_id, completed=len(student_ids))
        return student_ids

    async def accept_offer(self, principal: Principal, class_id: str) -> EnrollmentResult:
        """Accept the seat held for the calling student."""
        try:
            allocation = await self.capacity.accept_offer(class_id, principal.user_id)
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

        if isinstance(allocation, Rejected):
            expired = allocation.reason == "offer_expired"
            return EnrollmentResult(
                success=False,
                code=allocation.reason,
                message="The waitlist offer has expired" if expired else "No seat is being held for you",
                category=ErrorCategory.EXPIRED if expired else ErrorCategory.CONFLICT,
                state=EnrollmentState.DROPPED if expired else None,
            )
        return allocation_to_result(allocation)

    async def decline_offer(self, principal: Principal, class_id: str) -> EnrollmentResult:
        """Decline the seat held for the calling student."""
        return await self._leave(principal, class_id, decline=True)

    async def leave_waitlist(self, principal: Principal, class_id: str) -> EnrollmentResult:
        """Remove the calling student from the waitlist."""
        return await self._leave(principal, class_id, decline=False)

    async def _leave(self, principal: Principal, class_id: str, decline: bool) -> EnrollmentResult:
        try:
            if decline:
                removed = await self.capacity.decline_offer(class_id, principal.user_id)
            else:
                removed = await self.capacity.leave_waitlist(class_id, principal.user_id)
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

        if not removed:
            return EnrollmentResult(
                success=False,
                code="no_active_offer" if decline else "not_waitlisted",
                message="No seat is being held for you" if decline else "You are not on the waitlist",
                category=ErrorCategory.CONFLICT,
            )
        return EnrollmentResult(
            success=True,
            code="offer_declined" if decline else "left_waitlist",
            message="Removed from the waitlist",
            state=EnrollmentState.DROPPED,
        )

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    async def invite_student(
        self,
        principal: Principal,
        class_id: str,
        student_id: str,
        message: str | None = None,
        expires_in_days: int | None = None,
    ) -> str:
        """
        Invite a student to a class.

        Returns:
            Invitation id

        Raises:
            AuthorizationError: If principal does not teach or administer the class
        """
        async with self.store.transaction() as tx:
            cls = await tx.lock_class(class_id)
            self.rbac.require_reviewer(principal, cls.institution_id, cls.instructor_id, "invite")

            now = self.clock()
            invitation = ClassInvitationModel(
                class_id=class_id,
                student_id=student_id,
                invited_by=principal.user_id,
                message=message,
                created_at=now,
                expires_at=now + timedelta(days=expires_in_days or self.invitation_ttl_days),
            )
            tx.add(invitation)
            await tx.flush()

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.INVITED,
                performed_by=principal.user_id,
                details={"invitation_id": invitation.id},
            )
            tx.after_commit(partial(
                self.notifier.dispatch,
                Notification(
                    type=NotificationType.CLASS_INVITATION,
                    recipient_id=student_id,
                    class_id=class_id,
                    payload={"invitation_id": invitation.id, "class_name": cls.name},
                    expires_at=invitation.expires_at,
                ),
            ))
            return invitation.id

    async def accept_invitation(self, principal: Principal, invitation_id: str) -> EnrollmentResult:
        """Accept an invitation; the student is placed like in an open class."""
        try:
            async with self.store.transaction() as tx:
                invitation = await self._live_invitation_by_id(tx, invitation_id)
                cls = await tx.lock_class(invitation.class_id)
                self.rbac.require_student_access(
                    principal, invitation.student_id, cls.institution_id, cls.instructor_id, "accept invitation"
                )

                existing = await self._existing_state(tx, cls, invitation.student_id)
                if existing is not None:
                    return existing

                invitation.accepted_at = self.clock()
                await self.audit.record(
                    tx,
                    student_id=invitation.student_id,
                    class_id=cls.id,
                    action=AuditAction.INVITATION_ACCEPTED,
                    performed_by=principal.user_id,
                    details={"invitation_id": invitation.id},
                )
                allocation = await self.capacity.allocate(
                    cls.id, invitation.student_id, performed_by=principal.user_id, uow=tx
                )
                if isinstance(allocation, Rejected):
                    # Keep the invitation usable when the class is full
                    raise InvalidStateTransitionError(
                        "Class and waitlist are full", code=allocation.reason
                    )
                return allocation_to_result(allocation)
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

    async def decline_invitation(self, principal: Principal, invitation_id: str) -> EnrollmentResult:
        try:
            async with self.store.transaction() as tx:
                invitation = await self._live_invitation_by_id(tx, invitation_id)
                cls = await tx.lock_class(invitation.class_id)
                self.rbac.require_student_access(
                    principal, invitation.student_id, cls.institution_id, cls.instructor_id, "decline invitation"
                )
                invitation.declined_at = self.clock()
                await self.audit.record(
                    tx,
                    student_id=invitation.student_id,
                    class_id=cls.id,
                    action=AuditAction.INVITATION_DECLINED,
                    performed_by=principal.user_id,
                    details={"invitation_id": invitation.id},
                )
                return EnrollmentResult(
                    success=True,
                    code="invitation_declined",
                    message="Invitation declined",
                    state=EnrollmentState.REJECTED,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return EnrollmentResult.from_exception(exc)

    # ------------------------------------------------------------------
    # Override entry points (used by the override service)
    # ------------------------------------------------------------------

    async def force_enroll(
        self,
        tx: UnitOfWork,
        student_id: str,
        class_id: str,
        performed_by: str,
        override_type: str,
        window_only: bool = False,
    ) -> AllocationResult:
        """
        Allocate a seat bypassing the enrollment-mode gate.

        With window_only, only enrollment-window reasons are ignored and
        every other blocking reason still refuses the student.
        """
        cls = await tx.lock_class(class_id)
        if window_only:
            facts = await self._load_facts(student_id, cls.institution_id)
            eligibility = self.rules.evaluate_eligibility(
                facts, await self._class_rules(tx, cls), self.clock(), include_window=False
            )
            if not eligibility.eligible:
                return Rejected(reason="eligibility_failed")
            priority = facts.priority
        else:
            priority = 0

        return await self.capacity.allocate(
            class_id, student_id, performed_by=performed_by, priority=priority,
            via_override=override_type, uow=tx,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def evaluate_eligibility(self, student_id: str, class_id: str) -> EligibilityResult:
        """Evaluate eligibility without attempting enrollment."""
        async with self.store.transaction() as tx:
            cls = await tx.get_class(class_id)
            facts = await self._load_facts(student_id, cls.institution_id)
            return self.rules.evaluate_eligibility(facts, await self._class_rules(tx, cls), self.clock())

    async def _existing_state(
        self, tx: UnitOfWork, cls: ClassModel, student_id: str
    ) -> EnrollmentResult | None:
        enrollment = await tx.scalar(
            select(EnrollmentModel)
            .where(
                EnrollmentModel.class_id == cls.id,
                EnrollmentModel.student_id == student_id,
                EnrollmentModel.status.in_(ACTIVE_ENROLLMENT_STATUSES),
            )
            .order_by(EnrollmentModel.created_at.desc()),
            operation="existing_enrollment",
        )
        if enrollment is not None:
            if enrollment.status == EnrollmentStatus.ENROLLED.value:
                return EnrollmentResult(
                    success=True,
                    code="already_enrolled",
                    message="Student is already enrolled in this class",
                    state=EnrollmentState.ENROLLED,
                    enrollment_id=enrollment.id,
                )
            position = await self.capacity.get_waitlist_position(cls.id, student_id, uow=tx)
            return EnrollmentResult(
                success=True,
                code="already_waitlisted",
                message="Student is already on the waitlist",
                state=EnrollmentState.WAITLISTED,
                enrollment_id=enrollment.id,
                waitlist_position=position,
                estimated_probability=estimate_enrollment_probability(position) if position else None,
                estimated_wait_time=estimate_wait_time(position) if position else None,
                next_steps=["You will be notified when a seat becomes available"],
            )

        completed = await tx.scalar(
            select(EnrollmentModel.id).where(
                EnrollmentModel.class_id == cls.id,
                EnrollmentModel.student_id == student_id,
                EnrollmentModel.status == EnrollmentStatus.COMPLETED.value,
            ),
            operation="completed_enrollment",
        )
        if completed is not None:
            return EnrollmentResult(
                success=False,
                code="already_completed",
                message="Student has already completed this class",
                category=ErrorCategory.CONFLICT,
                state=EnrollmentState.COMPLETED,
                enrollment_id=completed,
            )

        request = await self.approvals.find_pending(tx, cls.id, student_id)
        if request is not None:
            return EnrollmentResult(
                success=True,
                code="already_pending",
                message="An enrollment request is already awaiting approval",
                state=EnrollmentState.PENDING_APPROVAL,
                request_id=request.id,
            )
        return None

    async def _eligibility_failed(
        self,
        tx: UnitOfWork,
        cls: ClassModel,
        student_id: str,
        principal: Principal,
        eligibility: EligibilityResult,
    ) -> EnrollmentResult:
        blocking = eligibility.blocking_reasons
        await self.audit.record(
            tx,
            student_id=student_id,
            class_id=cls.id,
            action=AuditAction.ELIGIBILITY_FAILED,
            performed_by=principal.user_id,
            reason="; ".join(reason.message for reason in blocking),
            new_status=EnrollmentState.ELIGIBILITY_FAILED.value,
            details={"reasons": [reason.type for reason in blocking]},
        )
        return EnrollmentResult(
            success=False,
            code="eligibility_failed",
            message="Student does not meet the enrollment requirements",
            category=ErrorCategory.ELIGIBILITY,
            state=EnrollmentState.ELIGIBILITY_FAILED,
            reasons=eligibility.reasons,
            next_steps=eligibility.recommended_actions,
        )

    async def _invitation_gate(
        self, tx: UnitOfWork, cls: ClassModel, student_id: str, principal: Principal
    ) -> EnrollmentResult:
        now = self.clock()
        invitation = await tx.scalar(
            select(ClassInvitationModel)
            .where(
                ClassInvitationModel.class_id == cls.id,
                ClassInvitationModel.student_id == student_id,
                ClassInvitationModel.accepted_at.is_(None),
                ClassInvitationModel.declined_at.is_(None),
                ClassInvitationModel.expires_at > now,
            )
            .order_by(ClassInvitationModel.created_at.desc()),
            operation="live_invitation",
        )
        code = "use_invitation" if invitation else "invitation_required"
        await self.audit.record(
            tx,
            student_id=student_id,
            class_id=cls.id,
            action=AuditAction.REJECTED,
            performed_by=principal.user_id,
            reason=code,
        )
        if invitation is not None:
            return EnrollmentResult(
                success=False,
                code=code,
                message="You have an invitation to this class; accept it to enroll",
                category=ErrorCategory.CONFLICT,
                state=EnrollmentState.REJECTED,
                details={"invitation_id": invitation.id},
                next_steps=["Accept your class invitation"],
            )
        return EnrollmentResult(
            success=False,
            code=code,
            message="This class is invitation-only",
            category=ErrorCategory.CONFLICT,
            state=EnrollmentState.REJECTED,
            next_steps=["Ask the instructor for an invitation"],
        )

    async def _live_invitation_by_id(self, tx: UnitOfWork, invitation_id: str) -> ClassInvitationModel:
        invitation = await tx.get(ClassInvitationModel, invitation_id)
        if invitation is None:
            raise EntityNotFoundError("Invitation", invitation_id)
        if invitation.accepted_at or invitation.declined_at:
            raise InvalidStateTransitionError(
                "Invitation was already answered", code="invitation_used"
            )
        if invitation.expires_at <= self.clock():
            raise InvalidStateTransitionError(
                "Invitation has expired", code="invitation_expired"
            )
        return invitation

    async def _class_rules(self, tx: UnitOfWork, cls: ClassModel) -> ClassRules:
        prerequisites = await tx.scalars(
            select(PrerequisiteModel).where(PrerequisiteModel.class_id == cls.id),
            operation="class_prerequisites",
        )
        restrictions = await tx.scalars(
            select(RestrictionModel).where(RestrictionModel.class_id == cls.id),
            operation="class_restrictions",
        )
        return ClassRules(
            class_id=cls.id,
            institution_id=cls.institution_id,
            enrollment_start=cls.enrollment_start,
            enrollment_end=cls.enrollment_end,
            prerequisites=[
                PrerequisiteRule(
                    type=PrerequisiteType(p.type),
                    requirement=p.requirement,
                    description=p.description,
                    strict=p.strict,
                )
                for p in prerequisites
            ],
            restrictions=[
                RestrictionRule(
                    type=RestrictionType(r.type),
                    condition=r.condition,
                    description=r.description,
                    overridable=r.overridable,
                )
                for r in restrictions
            ],
        )

    async def _load_facts(self, student_id: str, institution_id: str) -> StudentFacts:
        try:
            async with asyncio.timeout(self.facts_timeout_seconds):
                return await self.facts_provider.get_facts(student_id, institution_id)
        except TimeoutError:
            raise ExternalServiceError("student_facts", timeout=True) from None
        except DomainException:
            raise
        except Exception as exc:
            raise ExternalServiceError(
                "student_facts", message=f"student_facts service failed: {exc}", cause=exc
            ) from exc
