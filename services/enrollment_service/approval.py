"""
Approval Workflow

Pending enrollment requests for restricted classes and the decisions on
them. Requests past their expiry are expired lazily, on first touch, under
the class lock so the expiry is recorded exactly once.
"""

from datetime import timedelta
from functools import partial

import structlog
from sqlalchemy import select

from services.enrollment_service.audit import EnrollmentAuditLog
from services.enrollment_service.capacity import CapacityManager, estimate_wait_time
from services.enrollment_service.models import ClassModel, EnrollmentRequestModel
from services.enrollment_service.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationType,
)
from services.enrollment_service.schemas import (
    AuditAction,
    DecisionResult,
    Enrolled,
    EnrollmentRequestView,
    EnrollmentResult,
    EnrollmentState,
    Rejected,
    RequestStatus,
    Waitlisted,
)
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from services.enrollment_service.tenant_policy import TenantPolicyRegistry
from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    BusinessRuleViolationError,
    DomainException,
    EntityNotFoundError,
    ErrorCategory,
    InvalidStateTransitionError,
    ValidationError,
)
from shared.security.rbac import Principal, RBACService

logger = structlog.get_logger(__name__)


class ApprovalWorkflow:
    """
    Human-in-the-loop approval of enrollment requests.

    Approvers are the class instructor or an administrator of the class's
    institution.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        capacity: CapacityManager,
        audit: EnrollmentAuditLog,
        notifier: NotificationDispatcher,
        policies: TenantPolicyRegistry,
        rbac: RBACService | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.capacity = capacity
        self.audit = audit
        self.notifier = notifier
        self.policies = policies
        self.rbac = rbac or RBACService()
        self.clock = clock

    async def submit(
        self,
        tx: UnitOfWork,
        cls: ClassModel,
        student_id: str,
        requested_by: str,
        justification: str | None = None,
        priority: int = 0,
    ) -> EnrollmentResult:
        """
        Create a pending request inside the orchestrator's unit of work.

        Raises:
            ValidationError: If the class requires a justification and none was given
        """
        if cls.requires_justification and not (justification and justification.strip()):
            raise ValidationError(
                "A justification is required to request enrollment in this class",
                field="justification",
                code="justification_required",
            )

        now = self.clock()
        expiry_days = self.policies.get(cls.institution_id).request_expiry_days
        request = EnrollmentRequestModel(
            student_id=student_id,
            class_id=cls.id,
            status=RequestStatus.PENDING.value,
            justification=justification,
            priority=priority,
            requested_by=requested_by,
            requested_at=now,
            expires_at=now + timedelta(days=expiry_days),
        )
        tx.add(request)
        await tx.flush()

        await self.audit.record(
            tx,
            student_id=student_id,
            class_id=cls.id,
            action=AuditAction.REQUESTED,
            performed_by=requested_by,
            reason=justification,
            new_status=RequestStatus.PENDING.value,
            details={"request_id": request.id},
        )
        if cls.instructor_id:
            tx.after_commit(partial(
                self.notifier.dispatch,
                Notification(
                    type=NotificationType.ENROLLMENT_REQUEST_RECEIVED,
                    recipient_id=cls.instructor_id,
                    class_id=cls.id,
                    payload={"request_id": request.id, "student_id": student_id},
                ),
            ))
        logger.info(
            "Enrollment request submitted",
            request_id=request.id,
            class_id=cls.id,
            student_id=student_id,
        )

        if cls.auto_approve:
            decision = await self._approve(
                tx, request, cls, Principal.system(cls.institution_id), "Automatically approved"
            )
            return EnrollmentResult(
                success=True,
                code="auto_approved",
                message=decision.message,
                state=decision.state,
                request_id=request.id,
                enrollment_id=decision.enrollment_id,
                waitlist_position=decision.waitlist_position,
            )

        return EnrollmentResult(
            success=True,
            code="pending_approval",
            message="Enrollment request submitted for approval",
            state=EnrollmentState.PENDING_APPROVAL,
            request_id=request.id,
            next_steps=["Wait for the instructor to review your request"],
        )

    async def approve(
        self, request_id: str, approver: Principal, notes: str | None = None
    ) -> DecisionResult:
        """
        Approve a pending request and place the student.

        The class's capacity is re-checked now; a full class waitlists the
        student instead of failing.

        Args:
            request_id: Request to approve
            approver: Acting principal
            notes: Optional review notes

        Returns:
            DecisionResult
        """
        try:
            async with self.store.transaction() as tx:
                request, cls = await self._load_for_decision(tx, request_id)
                self.rbac.require_reviewer(approver, cls.institution_id, cls.instructor_id, "approve")
                if await self.refresh_expiry(tx, request):
                    return self._expired(request)
                self._require_pending(request)
                return await self._approve(tx, request, cls, approver, notes)
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return DecisionResult.from_exception(exc, request_id=request_id)

    async def deny(self, request_id: str, approver: Principal, reason: str) -> DecisionResult:
        """
        Deny a pending request.

        Args:
            request_id: Request to deny
            approver: Acting principal
            reason: Mandatory reason, recorded and sent to the student

        Returns:
            DecisionResult
        """
        try:
            if not reason or not reason.strip():
                raise ValidationError("A reason is required to deny a request", field="reason", code="reason_required")

            async with self.store.transaction() as tx:
                request, cls = await self._load_for_decision(tx, request_id)
                self.rbac.require_reviewer(approver, cls.institution_id, cls.instructor_id, "deny")
                if await self.refresh_expiry(tx, request):
                    return self._expired(request)
                self._require_pending(request)

                request.status = RequestStatus.DENIED.value
                request.reviewed_by = approver.user_id
                request.reviewed_at = self.clock()
                request.review_notes = reason
                await tx.flush()

                await self.audit.record(
                    tx,
                    student_id=request.student_id,
                    class_id=cls.id,
                    action=AuditAction.DENIED,
                    performed_by=approver.user_id,
                    reason=reason,
                    previous_status=RequestStatus.PENDING.value,
                    new_status=RequestStatus.DENIED.value,
                    details={"request_id": request.id},
                )
                tx.after_commit(partial(
                    self.notifier.dispatch,
                    Notification(
                        type=NotificationType.ENROLLMENT_DENIED,
                        recipient_id=request.student_id,
                        class_id=cls.id,
                        payload={"request_id": request.id, "reason": reason},
                    ),
                ))
                logger.info("Enrollment request denied", request_id=request.id, approver=approver.user_id)

                return DecisionResult(
                    success=True,
                    code="denied",
                    message="Enrollment request denied",
                    request_id=request.id,
                    request_status=RequestStatus.DENIED,
                    state=EnrollmentState.DENIED,
                )
        except DomainException as exc:
            if exc.category is ErrorCategory.SYSTEM:
                raise
            return DecisionResult.from_exception(exc, request_id=request_id)

    async def get_request(self, request_id: str) -> EnrollmentRequestView | None:
        """Read a request, expiring it first if it is past due."""
        async with self.store.transaction() as tx:
            request = await tx.get(EnrollmentRequestModel, request_id)
            if request is None:
                return None
            await tx.lock_class(request.class_id)
            await tx.refresh(request)
            await self.refresh_expiry(tx, request)
            return EnrollmentRequestView.model_validate(request)

    async def list_pending(self, class_id: str) -> list[EnrollmentRequestView]:
        """Pending requests of a class, oldest first; past-due ones are expired on the way."""
        async with self.store.transaction() as tx:
            await tx.lock_class(class_id)
            requests = await tx.scalars(
                select(EnrollmentRequestModel)
                .where(
                    EnrollmentRequestModel.class_id == class_id,
                    EnrollmentRequestModel.status == RequestStatus.PENDING.value,
                )
                .order_by(EnrollmentRequestModel.requested_at)
                .execution_options(populate_existing=True),
                operation="list_pending",
            )
            pending = []
            for request in requests:
                if not await self.refresh_expiry(tx, request):
                    pending.append(EnrollmentRequestView.model_validate(request))
            return pending

    async def refresh_expiry(self, tx: UnitOfWork, request: EnrollmentRequestModel) -> bool:
        """
        Expire a pending request that is past due. Caller holds the class lock.

        Returns:
            True if the request is expired after this call
        """
        if request.status == RequestStatus.EXPIRED.value:
            return True
        if request.status != RequestStatus.PENDING.value or self.clock() < request.expires_at:
            return False

        request.status = RequestStatus.EXPIRED.value
        await tx.flush()
        await self.audit.record(
            tx,
            student_id=request.student_id,
            class_id=request.class_id,
            action=AuditAction.EXPIRED,
            performed_by="system",
            reason="Request not reviewed before expiry",
            previous_status=RequestStatus.PENDING.value,
            new_status=RequestStatus.EXPIRED.value,
            details={"request_id": request.id},
        )
        logger.info("Enrollment request expired", request_id=request.id)
        return True

    async def find_pending(
        self, tx: UnitOfWork, class_id: str, student_id: str
    ) -> EnrollmentRequestModel | None:
        """Live pending request of a student for a class (expiring stale ones)."""
        request = await tx.scalar(
            select(EnrollmentRequestModel)
            .where(
                EnrollmentRequestModel.class_id == class_id,
                EnrollmentRequestModel.student_id == student_id,
                EnrollmentRequestModel.status == RequestStatus.PENDING.value,
            )
            .order_by(EnrollmentRequestModel.requested_at.desc()),
            operation="find_pending_request",
        )
        if request is None or await self.refresh_expiry(tx, request):
            return None
        return request

    async def _approve(
        self,
        tx: UnitOfWork,
        request: EnrollmentRequestModel,
        cls: ClassModel,
        approver: Principal,
        notes: str | None,
    ) -> DecisionResult:
        allocation = await self.capacity.allocate(
            cls.id,
            request.student_id,
            performed_by=approver.user_id,
            priority=request.priority,
            uow=tx,
        )
        if isinstance(allocation, Rejected):
            raise BusinessRuleViolationError(
                "Class and waitlist are full; the request stays pending",
                rule_name=allocation.reason,
            )

        now = self.clock()
        request.status = RequestStatus.APPROVED.value
        request.reviewed_by = approver.user_id
        request.reviewed_at = now
        if isinstance(allocation, Enrolled):
            request.review_notes = notes or "Approved and enrolled"
            state, position = EnrollmentState.ENROLLED, None
        else:
            request.review_notes = notes or "Approved but added to waitlist due to capacity"
            state, position = EnrollmentState.WAITLISTED, allocation.position
        await tx.flush()

        await self.audit.record(
            tx,
            student_id=request.student_id,
            class_id=cls.id,
            action=AuditAction.APPROVED,
            performed_by=approver.user_id,
            reason=request.review_notes,
            previous_status=RequestStatus.PENDING.value,
            new_status=RequestStatus.APPROVED.value,
            details={"request_id": request.id, "outcome": allocation.outcome},
        )
        tx.after_commit(partial(
            self.notifier.dispatch,
            Notification(
                type=NotificationType.ENROLLMENT_APPROVED,
                recipient_id=request.student_id,
                class_id=cls.id,
                payload={"request_id": request.id, "outcome": allocation.outcome, "position": position},
            ),
        ))
        logger.info(
            "Enrollment request approved",
            request_id=request.id,
            approver=approver.user_id,
            outcome=allocation.outcome,
        )

        message = request.review_notes
        if isinstance(allocation, Waitlisted):
            message = f"{message} (position {position}, estimated wait {estimate_wait_time(position)})"
        return DecisionResult(
            success=True,
            code="approved",
            message=message,
            request_id=request.id,
            request_status=RequestStatus.APPROVED,
            state=state,
            enrollment_id=allocation.enrollment_id,
            waitlist_position=position,
        )

    async def _load_for_decision(
        self, tx: UnitOfWork, request_id: str
    ) -> tuple[EnrollmentRequestModel, ClassModel]:
        request = await tx.get(EnrollmentRequestModel, request_id)
        if request is None:
            raise EntityNotFoundError("Enrollment request", request_id)
        cls = await tx.lock_class(request.class_id)
        await tx.refresh(request)
        return request, cls

    def _require_pending(self, request: EnrollmentRequestModel) -> None:
        if request.status != RequestStatus.PENDING.value:
            raise InvalidStateTransitionError(
                f"Request is already {request.status}",
                current_state=request.status,
                code="request_not_pending",
            )

    def _expired(self, request: EnrollmentRequestModel) -> DecisionResult:
        return DecisionResult(
            success=False,
            code="request_expired",
            message="Enrollment request has expired",
            category=ErrorCategory.EXPIRED,
            request_id=request.id,
            request_status=RequestStatus.EXPIRED,
            state=EnrollmentState.EXPIRED,
        )
