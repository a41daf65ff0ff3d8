"""
Capacity & Waitlist Manager

Atomic seat allocation, waitlist ordering and promotion for one class at a
time. Every mutating operation runs under the class lock inside a unit of
work, so for any interleaving:

    seated + active holds <= capacity + override seats
    waitlisted <= waitlist limit

Seated students are those enrolled or completed; current_enrollment counts
both, so completing a class never frees a seat.
"""

import math
from datetime import timedelta
from functools import partial

import structlog
from sqlalchemy import select

from services.enrollment_service.audit import EnrollmentAuditLog
from services.enrollment_service.models import (
    ClassModel,
    EnrollmentModel,
    WaitlistEntryModel,
)
from services.enrollment_service.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationType,
)
from services.enrollment_service.schemas import (
    ACTIVE_ENROLLMENT_STATUSES,
    AllocationResult,
    AuditAction,
    ClassOccupancy,
    Enrolled,
    EnrollmentStatus,
    Rejected,
    Waitlisted,
    WaitlistEntryView,
    WaitlistOffer,
)
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from services.enrollment_service.tenant_policy import TenantPolicyRegistry
from shared.domain.clock import Clock, utc_now
from shared.domain.exceptions import (
    InvalidStateTransitionError,
    StoreTimeoutError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


def estimate_enrollment_probability(position: int) -> float:
    """Chance a waitlisted student eventually gets a seat, clamped to [0.1, 0.9]."""
    return round(max(0.1, min(0.9, 1 - position * 0.1)), 2)


def estimate_wait_time(position: int) -> str:
    """Rough wait estimate at three days per waitlist position."""
    days = position * 3
    if days < 7:
        return f"{days} days"
    if days < 30:
        weeks = math.ceil(days / 7)
        return f"{weeks} weeks"
    months = math.ceil(days / 30)
    return f"{months} month{'s' if months != 1 else ''}"


class CapacityManager:
    """
    Owns the seat and waitlist invariants of every class.

    Public methods accept an optional unit of work so callers can compose
    them into a larger transaction; without one they open their own.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        audit: EnrollmentAuditLog,
        notifier: NotificationDispatcher,
        policies: TenantPolicyRegistry,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.policies = policies
        self.clock = clock

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def allocate(
        self,
        class_id: str,
        student_id: str,
        performed_by: str | None = None,
        priority: int = 0,
        via_override: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> AllocationResult:
        """
        Give the student a seat, a waitlist position, or a rejection.

        Idempotent: a student already enrolled or waitlisted gets their
        current outcome back.

        Args:
            class_id: Target class
            student_id: Student to place
            performed_by: Acting principal id (defaults to the student)
            priority: Waitlist priority (higher is served first)
            via_override: Override type that authorized this allocation
            uow: Enclosing unit of work

        Returns:
            Enrolled | Waitlisted | Rejected
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)
            return await self._allocate(
                tx, cls, student_id, performed_by or student_id, priority, via_override
            )

    async def release(
        self,
        class_id: str,
        student_id: str,
        performed_by: str | None = None,
        reason: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> EnrollmentModel:
        """
        Drop an enrolled student and offer the freed seat to the waitlist.

        Raises:
            InvalidStateTransitionError: If the student is not enrolled
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)

            enrollment = await self._active_enrollment(tx, class_id, student_id)
            if enrollment is None or enrollment.status != EnrollmentStatus.ENROLLED.value:
                raise InvalidStateTransitionError(
                    "Student is not enrolled in this class",
                    current_state=enrollment.status if enrollment else None,
                    code="not_enrolled",
                )

            enrollment.status = EnrollmentStatus.DROPPED.value
            enrollment.dropped_at = self.clock()
            cls.current_enrollment = max(0, cls.current_enrollment - 1)
            self._absorb_override_seats(cls, await self._active_hold_count(tx, class_id))

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.DROPPED,
                performed_by=performed_by or student_id,
                reason=reason,
                previous_status=EnrollmentStatus.ENROLLED.value,
                new_status=EnrollmentStatus.DROPPED.value,
                details={"enrolled_count": cls.current_enrollment},
            )
            logger.info(
                "Student released",
                class_id=class_id,
                student_id=student_id,
                enrolled_count=cls.current_enrollment,
            )

            await self._promote(tx, cls)
            return enrollment

    async def complete(
        self,
        class_id: str,
        student_id: str,
        performed_by: str,
        uow: UnitOfWork | None = None,
    ) -> EnrollmentModel:
        """
        Mark an enrolled student as having completed the class.

        The student stays seated, so nothing is freed and the waitlist is
        not promoted.

        Raises:
            InvalidStateTransitionError: If the student is not enrolled
        """
        async with self.store.join(uow) as tx:
            await tx.lock_class(class_id)

            enrollment = await self._active_enrollment(tx, class_id, student_id)
            if enrollment is None or enrollment.status != EnrollmentStatus.ENROLLED.value:
                raise InvalidStateTransitionError(
                    "Student is not enrolled in this class",
                    current_state=enrollment.status if enrollment else None,
                    code="not_enrolled",
                )

            enrollment.status = EnrollmentStatus.COMPLETED.value
            enrollment.completed_at = self.clock()
            await tx.flush()

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.COMPLETED,
                performed_by=performed_by,
                previous_status=EnrollmentStatus.ENROLLED.value,
                new_status=EnrollmentStatus.COMPLETED.value,
            )
            logger.info("Enrollment completed", class_id=class_id, student_id=student_id)
            return enrollment

    async def promote(self, class_id: str, uow: UnitOfWork | None = None) -> list[WaitlistOffer]:
        """Offer every free seat to the next un-held waitlist entries."""
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            offers = await self._expire_holds(tx, cls)
            offers.extend(await self._promote(tx, cls))
            return offers

    async def expire_holds(self, class_id: str, uow: UnitOfWork | None = None) -> int:
        """
        Remove lapsed promotion holds and re-offer their seats.

        Returns:
            Number of holds that expired
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            now = self.clock()
            held = await self._held_entries(tx, class_id, include_lapsed=True)
            lapsed = sum(1 for entry in held if entry.notification_expires_at <= now)
            await self._expire_holds(tx, cls)
            return lapsed

    async def process_expired_holds(self, institution_id: str) -> int:
        """
        Expire lapsed holds in every class of an institution.

        Each class runs in its own unit of work. A class whose lock cannot
        be taken in time is skipped and left for the next sweep.

        Returns:
            Number of holds that expired
        """
        async with self.store.transaction() as tx:
            class_ids = await tx.scalars(
                select(WaitlistEntryModel.class_id)
                .join(ClassModel, ClassModel.id == WaitlistEntryModel.class_id)
                .where(
                    ClassModel.institution_id == institution_id,
                    WaitlistEntryModel.notification_expires_at <= self.clock(),
                )
                .distinct(),
                operation="lapsed_hold_scan",
            )

        expired = 0
        for class_id in class_ids:
            try:
                expired += await self.expire_holds(class_id)
            except StoreTimeoutError:
                logger.warning("Class busy during hold sweep", class_id=class_id)

        logger.info(
            "Hold sweep completed",
            institution_id=institution_id,
            classes=len(class_ids),
            expired=expired,
        )
        return expired

    async def accept_offer(
        self, class_id: str, student_id: str, uow: UnitOfWork | None = None
    ) -> AllocationResult:
        """
        Convert a held waitlist seat into an enrollment.

        Returns:
            Enrolled, or Rejected("offer_expired" | "no_active_offer")
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            now = self.clock()

            entry = await self._waitlist_entry(tx, class_id, student_id)
            lapsed = (
                entry is not None
                and entry.notification_expires_at is not None
                and entry.notification_expires_at <= now
            )
            await self._expire_holds(tx, cls)
            if lapsed:
                return Rejected(reason="offer_expired")

            if entry is None or not self._is_held(entry):
                existing = await self._active_enrollment(tx, class_id, student_id)
                if existing is not None and existing.status == EnrollmentStatus.ENROLLED.value:
                    return Enrolled(enrollment_id=existing.id)
                return Rejected(reason="no_active_offer")

            enrollment = await tx.get(EnrollmentModel, entry.enrollment_id)
            enrollment.status = EnrollmentStatus.ENROLLED.value
            enrollment.enrolled_at = now
            cls.current_enrollment += 1
            await tx.delete(entry)
            await tx.flush()
            await self._renumber(tx, class_id)

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.ENROLLED,
                performed_by=student_id,
                reason="Accepted waitlist offer",
                previous_status=EnrollmentStatus.WAITLISTED.value,
                new_status=EnrollmentStatus.ENROLLED.value,
                details={"enrolled_count": cls.current_enrollment},
            )
            logger.info("Waitlist offer accepted", class_id=class_id, student_id=student_id)
            return Enrolled(enrollment_id=enrollment.id)

    async def decline_offer(
        self, class_id: str, student_id: str, uow: UnitOfWork | None = None
    ) -> bool:
        """
        Give up a held seat; the seat is offered to the next student.

        Returns:
            False when the student holds no active offer
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)

            entry = await self._waitlist_entry(tx, class_id, student_id)
            if entry is None or not self._is_held(entry):
                return False

            await self._remove_entry(
                tx, cls, entry, AuditAction.OFFER_DECLINED, student_id, "Declined waitlist offer"
            )
            await self._renumber(tx, class_id)
            await self._promote(tx, cls)
            return True

    async def leave_waitlist(
        self,
        class_id: str,
        student_id: str,
        performed_by: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> bool:
        """
        Remove the student from the waitlist.

        Returns:
            False when the student is not waitlisted
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)

            entry = await self._waitlist_entry(tx, class_id, student_id)
            if entry is None:
                return False

            await self._remove_entry(
                tx, cls, entry, AuditAction.LEFT_WAITLIST, performed_by or student_id, "Left waitlist"
            )
            await self._renumber(tx, class_id)
            await self._promote(tx, cls)
            return True

    async def force_allocate(
        self,
        class_id: str,
        student_id: str,
        performed_by: str,
        reason: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> Enrolled:
        """
        Enroll a student even when the class is full (capacity override).

        Each seat granted beyond nominal capacity is recorded in
        override_seats so the detector does not flag it.
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)
            now = self.clock()

            existing = await self._active_enrollment(tx, class_id, student_id)
            if existing is not None and existing.status == EnrollmentStatus.ENROLLED.value:
                return Enrolled(enrollment_id=existing.id)

            previous_status = None
            if existing is not None:
                entry = await self._waitlist_entry(tx, class_id, student_id)
                if entry is not None:
                    await tx.delete(entry)
                    await tx.flush()
                enrollment = existing
                previous_status = EnrollmentStatus.WAITLISTED.value
            else:
                enrollment = EnrollmentModel(student_id=student_id, class_id=class_id, enrolled_by=performed_by)
                tx.add(enrollment)

            enrollment.status = EnrollmentStatus.ENROLLED.value
            enrollment.enrolled_at = now
            enrollment.via_override = "capacity_override"

            holds = await self._active_hold_count(tx, class_id)
            if cls.current_enrollment + holds >= cls.capacity:
                cls.override_seats += 1
            cls.current_enrollment += 1
            await tx.flush()
            await self._renumber(tx, class_id)

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.ENROLLED,
                performed_by=performed_by,
                reason=reason,
                previous_status=previous_status,
                new_status=EnrollmentStatus.ENROLLED.value,
                details={
                    "override": "capacity_override",
                    "enrolled_count": cls.current_enrollment,
                    "override_seats": cls.override_seats,
                },
            )
            logger.info(
                "Capacity override applied",
                class_id=class_id,
                student_id=student_id,
                override_seats=cls.override_seats,
            )
            return Enrolled(enrollment_id=enrollment.id)

    async def update_capacity(
        self,
        class_id: str,
        capacity: int,
        performed_by: str,
        uow: UnitOfWork | None = None,
    ) -> list[WaitlistOffer]:
        """
        Change the nominal capacity; an increase offers the new seats.

        Raises:
            ValidationError: If capacity is below 1
        """
        if capacity < 1:
            raise ValidationError(
                "Capacity must be at least 1", field="capacity", value=capacity, code="invalid_capacity"
            )

        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)

            previous = cls.capacity
            cls.capacity = capacity
            self._absorb_override_seats(cls, await self._active_hold_count(tx, class_id))
            await tx.flush()

            logger.info(
                "Class capacity updated",
                class_id=class_id,
                previous_capacity=previous,
                capacity=capacity,
                performed_by=performed_by,
            )
            if capacity > previous:
                return await self._promote(tx, cls)
            return []

    async def update_waitlist_priority(
        self,
        class_id: str,
        student_id: str,
        priority: int,
        performed_by: str,
        uow: UnitOfWork | None = None,
    ) -> int:
        """
        Change a waitlisted student's priority and re-rank the waitlist.

        Existing holds are kept; the new order applies to the next offers.

        Returns:
            The student's new position

        Raises:
            InvalidStateTransitionError: If the student is not waitlisted
        """
        async with self.store.join(uow) as tx:
            cls = await tx.lock_class(class_id)
            await self._expire_holds(tx, cls)

            entry = await self._waitlist_entry(tx, class_id, student_id)
            if entry is None:
                raise InvalidStateTransitionError(
                    "Student is not on the waitlist", code="not_waitlisted"
                )

            previous_priority, previous_position = entry.priority, entry.position
            entry.priority = priority
            await tx.flush()
            await self._renumber(tx, class_id)

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=class_id,
                action=AuditAction.PRIORITY_UPDATED,
                performed_by=performed_by,
                details={
                    "previous_priority": previous_priority,
                    "priority": priority,
                    "previous_position": previous_position,
                    "position": entry.position,
                },
            )
            logger.info(
                "Waitlist priority updated",
                class_id=class_id,
                student_id=student_id,
                priority=priority,
                position=entry.position,
            )
            return entry.position

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_waitlist_position(
        self, class_id: str, student_id: str, uow: UnitOfWork | None = None
    ) -> int | None:
        # Lapsed holds are skipped until the next locked operation removes them
        async with self.store.join(uow) as tx:
            for position, entry in enumerate(await self._live_waitlist(tx, class_id), start=1):
                if entry.student_id == student_id:
                    return position
            return None

    async def get_waitlist(self, class_id: str) -> list[WaitlistEntryView]:
        async with self.store.transaction() as tx:
            entries = await self._live_waitlist(tx, class_id)
            return [
                WaitlistEntryView.model_validate(entry).model_copy(update={
                    "position": position,
                    "estimated_probability": estimate_enrollment_probability(position),
                })
                for position, entry in enumerate(entries, start=1)
            ]

    async def get_occupancy(self, class_id: str) -> ClassOccupancy:
        async with self.store.transaction() as tx:
            cls = await tx.get_class(class_id)
            return ClassOccupancy(
                class_id=class_id,
                capacity=cls.capacity,
                enrolled=cls.current_enrollment,
                active_holds=await self._active_hold_count(tx, class_id),
                waitlisted=len(await self._live_waitlist(tx, class_id)),
                waitlist_limit=self.waitlist_limit(cls),
                override_seats=cls.override_seats,
            )

    @staticmethod
    def estimate_enrollment_probability(position: int) -> float:
        return estimate_enrollment_probability(position)

    @staticmethod
    def waitlist_limit(cls: ClassModel) -> int:
        if cls.max_waitlist_position is not None:
            return max(0, min(cls.waitlist_capacity, cls.max_waitlist_position))
        return max(0, cls.waitlist_capacity)

    # ------------------------------------------------------------------
    # Internals (caller holds the class lock)
    # ------------------------------------------------------------------

    async def _allocate(
        self,
        tx: UnitOfWork,
        cls: ClassModel,
        student_id: str,
        performed_by: str,
        priority: int,
        via_override: str | None,
    ) -> AllocationResult:
        existing = await self._active_enrollment(tx, cls.id, student_id)
        if existing is not None:
            if existing.status == EnrollmentStatus.ENROLLED.value:
                return Enrolled(enrollment_id=existing.id)
            entry = await self._waitlist_entry(tx, cls.id, student_id)
            return Waitlisted(
                enrollment_id=existing.id,
                position=entry.position,
                estimated_probability=entry.estimated_probability,
            )

        now = self.clock()
        holds = await self._active_hold_count(tx, cls.id)

        if cls.current_enrollment + holds < cls.capacity:
            enrollment = EnrollmentModel(
                student_id=student_id,
                class_id=cls.id,
                status=EnrollmentStatus.ENROLLED.value,
                enrolled_by=performed_by,
                via_override=via_override,
                enrolled_at=now,
            )
            tx.add(enrollment)
            cls.current_enrollment += 1
            await tx.flush()

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=cls.id,
                action=AuditAction.ENROLLED,
                performed_by=performed_by,
                new_status=EnrollmentStatus.ENROLLED.value,
                details={"enrolled_count": cls.current_enrollment, "capacity": cls.capacity},
            )
            logger.info(
                "Student enrolled",
                class_id=cls.id,
                student_id=student_id,
                enrolled_count=cls.current_enrollment,
                capacity=cls.capacity,
            )
            return Enrolled(enrollment_id=enrollment.id)

        waitlist = await self._waitlist(tx, cls.id)
        if cls.allow_waitlist and len(waitlist) < self.waitlist_limit(cls):
            enrollment = EnrollmentModel(
                student_id=student_id,
                class_id=cls.id,
                status=EnrollmentStatus.WAITLISTED.value,
                enrolled_by=performed_by,
                via_override=via_override,
            )
            tx.add(enrollment)
            await tx.flush()

            position = len(waitlist) + 1
            entry = WaitlistEntryModel(
                student_id=student_id,
                class_id=cls.id,
                enrollment_id=enrollment.id,
                position=position,
                priority=priority,
                join_sequence=max((e.join_sequence for e in waitlist), default=0) + 1,
                estimated_probability=estimate_enrollment_probability(position),
                added_at=now,
            )
            tx.add(entry)
            await tx.flush()
            await self._renumber(tx, cls.id)

            await self.audit.record(
                tx,
                student_id=student_id,
                class_id=cls.id,
                action=AuditAction.WAITLISTED,
                performed_by=performed_by,
                new_status=EnrollmentStatus.WAITLISTED.value,
                details={"position": entry.position, "priority": priority},
            )
            logger.info(
                "Student waitlisted",
                class_id=cls.id,
                student_id=student_id,
                position=entry.position,
            )
            return Waitlisted(
                enrollment_id=enrollment.id,
                position=entry.position,
                estimated_probability=entry.estimated_probability,
            )

        await self.audit.record(
            tx,
            student_id=student_id,
            class_id=cls.id,
            action=AuditAction.REJECTED,
            performed_by=performed_by,
            reason="capacity_full",
            details={"enrolled_count": cls.current_enrollment, "waitlisted": len(waitlist)},
        )
        logger.info("Allocation rejected, class full", class_id=cls.id, student_id=student_id)
        return Rejected(reason="capacity_full")

    async def _promote(self, tx: UnitOfWork, cls: ClassModel) -> list[WaitlistOffer]:
        now = self.clock()
        free = cls.capacity - cls.current_enrollment - await self._active_hold_count(tx, cls.id)
        if free <= 0:
            return []

        hold = timedelta(hours=self.policies.get(cls.institution_id).waitlist_hold_hours)
        offers: list[WaitlistOffer] = []
        for entry in await self._waitlist(tx, cls.id):
            if free <= 0:
                break
            if entry.notified_at is not None:
                continue

            entry.notified_at = now
            entry.notification_expires_at = now + hold
            free -= 1

            await self.audit.record(
                tx,
                student_id=entry.student_id,
                class_id=cls.id,
                action=AuditAction.PROMOTION_OFFERED,
                performed_by=SYSTEM_ACTOR,
                previous_status=EnrollmentStatus.WAITLISTED.value,
                new_status=EnrollmentStatus.WAITLISTED.value,
                details={
                    "position": entry.position,
                    "expires_at": entry.notification_expires_at.isoformat(),
                },
            )
            tx.after_commit(partial(
                self.notifier.dispatch,
                Notification(
                    type=NotificationType.ENROLLMENT_AVAILABLE,
                    recipient_id=entry.student_id,
                    class_id=cls.id,
                    payload={"class_name": cls.name, "position": entry.position},
                    expires_at=entry.notification_expires_at,
                ),
            ))
            offers.append(WaitlistOffer(
                class_id=cls.id,
                student_id=entry.student_id,
                offered_at=now,
                expires_at=entry.notification_expires_at,
            ))

        if offers:
            await tx.flush()
            logger.info(
                "Waitlist seats offered",
                class_id=cls.id,
                students=[offer.student_id for offer in offers],
            )
        return offers

    async def _expire_holds(self, tx: UnitOfWork, cls: ClassModel) -> list[WaitlistOffer]:
        now = self.clock()
        lapsed = [
            entry
            for entry in await self._held_entries(tx, cls.id, include_lapsed=True)
            if entry.notification_expires_at <= now
        ]
        if not lapsed:
            return []

        for entry in lapsed:
            await self._remove_entry(
                tx, cls, entry, AuditAction.OFFER_EXPIRED, SYSTEM_ACTOR, "Waitlist offer expired"
            )
        await self._renumber(tx, cls.id)
        logger.info("Waitlist holds expired", class_id=cls.id, count=len(lapsed))
        return await self._promote(tx, cls)

    async def _remove_entry(
        self,
        tx: UnitOfWork,
        cls: ClassModel,
        entry: WaitlistEntryModel,
        action: AuditAction,
        performed_by: str,
        reason: str,
    ) -> None:
        enrollment = await tx.get(EnrollmentModel, entry.enrollment_id)
        enrollment.status = EnrollmentStatus.DROPPED.value
        enrollment.dropped_at = self.clock()
        student_id, position = entry.student_id, entry.position
        await tx.delete(entry)
        await tx.flush()

        await self.audit.record(
            tx,
            student_id=student_id,
            class_id=cls.id,
            action=action,
            performed_by=performed_by,
            reason=reason,
            previous_status=EnrollmentStatus.WAITLISTED.value,
            new_status=EnrollmentStatus.DROPPED.value,
            details={"position": position},
        )

    async def _renumber(self, tx: UnitOfWork, class_id: str) -> None:
        """Re-rank the waitlist densely: priority desc, then join order."""
        entries = await tx.scalars(
            select(WaitlistEntryModel)
            .where(WaitlistEntryModel.class_id == class_id)
            .order_by(
                WaitlistEntryModel.priority.desc(),
                WaitlistEntryModel.added_at.asc(),
                WaitlistEntryModel.join_sequence.asc(),
            ),
            operation="renumber_waitlist",
        )
        for position, entry in enumerate(entries, start=1):
            entry.position = position
            entry.estimated_probability = estimate_enrollment_probability(position)
        await tx.flush()

    def _absorb_override_seats(self, cls: ClassModel, holds: int) -> None:
        excess = max(0, cls.current_enrollment + holds - cls.capacity)
        cls.override_seats = min(cls.override_seats, excess)

    def _is_held(self, entry: WaitlistEntryModel) -> bool:
        return entry.notification_expires_at is not None and entry.notification_expires_at > self.clock()

    async def _active_enrollment(
        self, tx: UnitOfWork, class_id: str, student_id: str
    ) -> EnrollmentModel | None:
        return await tx.scalar(
            select(EnrollmentModel)
            .where(
                EnrollmentModel.class_id == class_id,
                EnrollmentModel.student_id == student_id,
                EnrollmentModel.status.in_(ACTIVE_ENROLLMENT_STATUSES),
            )
            .order_by(EnrollmentModel.created_at.desc()),
            operation="active_enrollment",
        )

    async def _waitlist(self, tx: UnitOfWork, class_id: str) -> list[WaitlistEntryModel]:
        return await tx.scalars(
            select(WaitlistEntryModel)
            .where(WaitlistEntryModel.class_id == class_id)
            .order_by(WaitlistEntryModel.position),
            operation="waitlist",
        )

    async def _live_waitlist(self, tx: UnitOfWork, class_id: str) -> list[WaitlistEntryModel]:
        now = self.clock()
        return [
            entry
            for entry in await self._waitlist(tx, class_id)
            if entry.notification_expires_at is None or entry.notification_expires_at > now
        ]

    async def _waitlist_entry(
        self, tx: UnitOfWork, class_id: str, student_id: str
    ) -> WaitlistEntryModel | None:
        return await tx.scalar(
            select(WaitlistEntryModel).where(
                WaitlistEntryModel.class_id == class_id,
                WaitlistEntryModel.student_id == student_id,
            ),
            operation="waitlist_entry",
        )

    async def _held_entries(
        self, tx: UnitOfWork, class_id: str, include_lapsed: bool = False
    ) -> list[WaitlistEntryModel]:
        statement = select(WaitlistEntryModel).where(
            WaitlistEntryModel.class_id == class_id,
            WaitlistEntryModel.notification_expires_at.is_not(None),
        )
        if not include_lapsed:
            statement = statement.where(WaitlistEntryModel.notification_expires_at > self.clock())
        return await tx.scalars(statement, operation="held_entries")

    async def _active_hold_count(self, tx: UnitOfWork, class_id: str) -> int:
        return len(await self._held_entries(tx, class_id))
