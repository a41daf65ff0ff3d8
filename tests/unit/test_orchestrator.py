"""Unit tests for the enrollment orchestrator."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from services.enrollment_service.engine import build_enrollment_engine
from services.enrollment_service.models import EnrollmentModel
from services.enrollment_service.schemas import (
    AuditAction,
    EnrollmentState,
    PrerequisiteType,
    StudentFacts,
)
from shared.domain.exceptions import ErrorCategory, ExternalServiceError, StoreUnavailableError
from tests.conftest import INSTITUTION_ID, FailingFactsProvider, student


class SlowFactsProvider:
    """Facts provider that hangs for the listed students."""

    def __init__(self, slow: set[str]):
        self.slow = slow

    async def get_facts(self, student_id: str, institution_id: str) -> StudentFacts:
        if student_id in self.slow:
            await asyncio.sleep(30)
        return StudentFacts(student_id=student_id, institution_id=institution_id)


class TestOpenEnrollment:
    """Tests for request_enrollment() on open classes."""

    async def test_enrolls_student(self, enrollment, make_class):
        class_id = await make_class(capacity=5)

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.success is True
        assert result.code == "enrolled"
        assert result.state is EnrollmentState.ENROLLED
        assert result.enrollment_id is not None

    async def test_repeat_request_returns_existing_state(self, enrollment, make_class):
        class_id = await make_class(capacity=5)
        first = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        second = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert second.success is True
        assert second.code == "already_enrolled"
        assert second.enrollment_id == first.enrollment_id
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 1
        enrolled_entries = await enrollment.audit.get_entries(class_id=class_id, action=AuditAction.ENROLLED)
        assert len(enrolled_entries) == 1

    async def test_full_class_waitlists_with_estimates(self, enrollment, make_class):
        class_id = await make_class(capacity=1)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        result = await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)
        again = await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        assert result.state is EnrollmentState.WAITLISTED
        assert result.waitlist_position == 1
        assert result.estimated_probability == 0.9
        assert result.estimated_wait_time == "3 days"
        assert again.code == "already_waitlisted"
        fields = (
            "state", "enrollment_id", "waitlist_position",
            "estimated_probability", "estimated_wait_time", "next_steps",
        )
        assert [getattr(again, f) for f in fields] == [getattr(result, f) for f in fields]

    async def test_full_class_and_waitlist_rejects(self, enrollment, make_class):
        class_id = await make_class(capacity=1, waitlist_capacity=0)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        result = await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        assert result.success is False
        assert result.code == "capacity_full"
        assert result.category is ErrorCategory.CONFLICT
        assert result.state is EnrollmentState.REJECTED

    async def test_unknown_class(self, enrollment):
        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", "missing")

        assert result.success is False
        assert result.category is ErrorCategory.NOT_FOUND
        assert result.code == "class_not_found"


class TestEligibility:
    """Tests for the eligibility step."""

    async def test_missing_prerequisite_fails_with_reasons(self, enrollment, make_class, admin):
        class_id = await make_class(capacity=5)
        await enrollment.catalog.add_prerequisite(admin, class_id, PrerequisiteType.COURSE, "CS201")

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.success is False
        assert result.state is EnrollmentState.ELIGIBILITY_FAILED
        assert result.category is ErrorCategory.ELIGIBILITY
        assert [r.type for r in result.reasons] == ["prerequisite_course"]
        assert result.next_steps
        entries = await enrollment.audit.get_entries(class_id=class_id, student_id="s-1")
        assert [e.action for e in entries] == [AuditAction.ELIGIBILITY_FAILED.value]

    async def test_met_prerequisite_enrolls(self, enrollment, make_class, admin, facts):
        class_id = await make_class(capacity=5)
        await enrollment.catalog.add_prerequisite(admin, class_id, PrerequisiteType.COURSE, "CS201")
        facts.put(StudentFacts(
            student_id="s-1", institution_id=INSTITUTION_ID, completed_courses=frozenset({"CS201"}),
        ))

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.state is EnrollmentState.ENROLLED

    async def test_closed_window(self, enrollment, make_class, clock):
        class_id = await make_class(
            enrollment_start=clock.now - timedelta(days=10),
            enrollment_end=clock.now - timedelta(hours=1),
        )

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.state is EnrollmentState.ELIGIBILITY_FAILED
        assert result.reasons[0].type == "enrollment_closed"

    async def test_evaluate_without_enrolling(self, enrollment, make_class, admin):
        class_id = await make_class()
        await enrollment.catalog.add_prerequisite(admin, class_id, PrerequisiteType.YEAR, "2")

        result = await enrollment.orchestrator.evaluate_eligibility("s-1", class_id)

        assert result.eligible is False
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 0

    async def test_facts_timeout_is_a_system_error(self, session_factory, settings, clock, make_class):
        class_id = await make_class()
        engine = build_enrollment_engine(
            session_factory, settings, facts_provider=SlowFactsProvider({"s-1"}), clock=clock,
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await engine.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert exc_info.value.retryable is True
        assert (await engine.capacity.get_occupancy(class_id)).enrolled == 0

    async def test_facts_service_failure_is_a_system_error(self, session_factory, settings, clock, make_class):
        class_id = await make_class()
        engine = build_enrollment_engine(
            session_factory, settings, facts_provider=FailingFactsProvider({"s-1"}), clock=clock,
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await engine.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert exc_info.value.category is ErrorCategory.SYSTEM
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert not engine.store.lock_manager.is_locked(f"class:{class_id}")


class TestRestrictedAndInvitationModes:
    """Tests for the restricted and invitation-only branches."""

    async def test_restricted_creates_pending_request(self, enrollment, make_class):
        class_id = await make_class(enrollment_mode="restricted")

        result = await enrollment.orchestrator.request_enrollment(
            student("s-1"), "s-1", class_id, justification="Needed for my thesis"
        )
        again = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.state is EnrollmentState.PENDING_APPROVAL
        assert result.code == "pending_approval"
        assert again.code == "already_pending"
        assert again.request_id == result.request_id
        assert len(await enrollment.approvals.list_pending(class_id)) == 1

    async def test_missing_justification(self, enrollment, make_class):
        class_id = await make_class(enrollment_mode="restricted", requires_justification=True)

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id, justification="  ")

        assert result.success is False
        assert result.code == "justification_required"
        assert result.category is ErrorCategory.VALIDATION
        assert await enrollment.approvals.list_pending(class_id) == []

    async def test_auto_approve(self, enrollment, make_class):
        class_id = await make_class(enrollment_mode="restricted", auto_approve=True)

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.code == "auto_approved"
        assert result.state is EnrollmentState.ENROLLED
        request = await enrollment.approvals.get_request(result.request_id)
        assert request.status.value == "approved"
        assert request.reviewed_by == "system"

    async def test_invitation_required(self, enrollment, make_class):
        class_id = await make_class(enrollment_mode="invitation_only")

        result = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert result.success is False
        assert result.code == "invitation_required"
        assert result.state is EnrollmentState.REJECTED

    async def test_invitation_flow(self, enrollment, make_class, teacher, sender):
        class_id = await make_class(enrollment_mode="invitation_only", capacity=1)
        invitation_id = await enrollment.orchestrator.invite_student(teacher, class_id, "s-1")

        direct = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        accepted = await enrollment.orchestrator.accept_invitation(student("s-1"), invitation_id)
        reused = await enrollment.orchestrator.accept_invitation(student("s-1"), invitation_id)
        await enrollment.notifier.drain()

        assert direct.code == "use_invitation"
        assert direct.details["invitation_id"] == invitation_id
        assert accepted.state is EnrollmentState.ENROLLED
        assert reused.success is False
        assert reused.code == "invitation_used"
        assert [n.recipient_id for n in sender.sent if n.type.value == "class_invitation"] == ["s-1"]

    async def test_invitation_belongs_to_its_student(self, enrollment, make_class, teacher):
        class_id = await make_class(enrollment_mode="invitation_only")
        invitation_id = await enrollment.orchestrator.invite_student(teacher, class_id, "s-1")

        result = await enrollment.orchestrator.accept_invitation(student("s-2"), invitation_id)

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_expired_invitation(self, enrollment, make_class, teacher, clock):
        class_id = await make_class(enrollment_mode="invitation_only")
        invitation_id = await enrollment.orchestrator.invite_student(
            teacher, class_id, "s-1", expires_in_days=1
        )
        clock.advance(days=2)

        result = await enrollment.orchestrator.accept_invitation(student("s-1"), invitation_id)

        assert result.code == "invitation_expired"

    async def test_decline_invitation(self, enrollment, make_class, teacher):
        class_id = await make_class(enrollment_mode="invitation_only")
        invitation_id = await enrollment.orchestrator.invite_student(teacher, class_id, "s-1")

        declined = await enrollment.orchestrator.decline_invitation(student("s-1"), invitation_id)
        direct = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert declined.code == "invitation_declined"
        assert direct.code == "invitation_required"


class TestAuthorization:
    """Tests for who may act for whom."""

    async def test_student_cannot_enroll_someone_else(self, enrollment, make_class):
        class_id = await make_class()

        result = await enrollment.orchestrator.request_enrollment(student("s-2"), "s-1", class_id)

        assert result.success is False
        assert result.category is ErrorCategory.AUTHORIZATION
        assert result.code == "authorization_denied"

    async def test_other_institution_is_refused(self, enrollment, make_class):
        class_id = await make_class()

        result = await enrollment.orchestrator.request_enrollment(
            student("s-1", institution_id="inst-2"), "s-1", class_id
        )

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_instructor_enrolls_student(self, enrollment, make_class, teacher):
        class_id = await make_class()

        result = await enrollment.orchestrator.request_enrollment(teacher, "s-1", class_id)

        assert result.state is EnrollmentState.ENROLLED


class TestBulkEnroll:
    """Tests for bulk_enroll()."""

    async def test_reports_each_student_and_totals(self, enrollment, make_class, admin):
        class_id = await make_class(capacity=2, waitlist_capacity=1)

        result = await enrollment.orchestrator.bulk_enroll(admin, ["s-1", "s-2", "s-3", "s-4"], class_id)

        assert result.total_processed == 4
        assert result.successful == 3
        assert result.failed == 1
        assert result.summary.enrolled == 2
        assert result.summary.waitlisted == 1
        assert result.summary.rejected == 1
        assert [item.student_id for item in result.results] == ["s-1", "s-2", "s-3", "s-4"]

    async def test_system_error_is_recorded_per_student(self, session_factory, settings, clock, make_class, admin):
        class_id = await make_class(capacity=5)
        engine = build_enrollment_engine(
            session_factory, settings, facts_provider=SlowFactsProvider({"s-2"}), clock=clock,
        )

        result = await engine.orchestrator.bulk_enroll(admin, ["s-1", "s-2", "s-3"], class_id)

        assert [item.result.code for item in result.results] == ["enrolled", "internal_error", "enrolled"]
        assert result.results[1].result.category is ErrorCategory.SYSTEM
        assert result.summary.enrolled == 2
        assert result.failed == 1

    async def test_facts_service_failure_does_not_stop_the_batch(
        self, session_factory, settings, clock, make_class, admin
    ):
        class_id = await make_class(capacity=5)
        engine = build_enrollment_engine(
            session_factory, settings, facts_provider=FailingFactsProvider({"s-2"}), clock=clock,
        )

        result = await engine.orchestrator.bulk_enroll(admin, ["s-1", "s-2", "s-3"], class_id)

        assert [item.result.code for item in result.results] == ["enrolled", "internal_error", "enrolled"]
        assert result.results[1].result.details == {"retryable": True}
        assert (await engine.capacity.get_occupancy(class_id)).enrolled == 2


class TestDropAndWaitlistActions:
    """Tests for drops and the waitlist wrappers."""

    async def test_student_drops_and_seat_is_offered(self, enrollment, make_class):
        class_id = await make_class(capacity=1)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        dropped = await enrollment.orchestrator.drop_student(student("s-1"), "s-1", class_id, reason="moving")
        accepted = await enrollment.orchestrator.accept_offer(student("s-2"), class_id)

        assert dropped.state is EnrollmentState.DROPPED
        assert accepted.state is EnrollmentState.ENROLLED

    async def test_drop_deadline_applies_to_self_drops(self, enrollment, make_class, clock, admin):
        class_id = await make_class(drop_deadline=clock.now + timedelta(days=1))
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        clock.advance(days=2)

        late = await enrollment.orchestrator.drop_student(student("s-1"), "s-1", class_id)
        by_admin = await enrollment.orchestrator.drop_student(admin, "s-1", class_id, reason="approved late drop")

        assert late.success is False
        assert late.code == "drop_deadline_passed"
        assert late.category is ErrorCategory.EXPIRED
        assert by_admin.state is EnrollmentState.DROPPED

    async def test_students_cannot_drop_in_staff_name(self, enrollment, make_class, clock):
        class_id = await make_class(drop_deadline=clock.now + timedelta(days=1))
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        on_time = await enrollment.orchestrator.drop_student(
            student("s-1"), "s-1", class_id, performed_by="admin-1"
        )
        clock.advance(days=2)
        late = await enrollment.orchestrator.drop_student(
            student("s-2"), "s-2", class_id, performed_by="admin-1"
        )

        assert on_time.state is EnrollmentState.DROPPED
        assert late.code == "drop_deadline_passed"
        dropped = await enrollment.audit.get_entries(class_id=class_id, action=AuditAction.DROPPED)
        assert [(e.student_id, e.performed_by) for e in dropped] == [("s-1", "s-1")]

    async def test_drop_requires_enrollment(self, enrollment, make_class):
        class_id = await make_class()

        result = await enrollment.orchestrator.drop_student(student("s-1"), "s-1", class_id)

        assert result.success is False
        assert result.code == "not_enrolled"

    async def test_leave_waitlist(self, enrollment, make_class):
        class_id = await make_class(capacity=1)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        left = await enrollment.orchestrator.leave_waitlist(student("s-2"), class_id)
        again = await enrollment.orchestrator.leave_waitlist(student("s-2"), class_id)

        assert left.code == "left_waitlist"
        assert again.code == "not_waitlisted"

    async def test_expired_offer(self, enrollment, make_class, clock):
        class_id = await make_class(capacity=1)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)
        await enrollment.orchestrator.drop_student(student("s-1"), "s-1", class_id)
        clock.advance(hours=30)

        result = await enrollment.orchestrator.accept_offer(student("s-2"), class_id)

        assert result.code == "offer_expired"
        assert result.category is ErrorCategory.EXPIRED


class TestCompletion:
    """Tests for complete_enrollment() and complete_class()."""

    async def test_instructor_completes_enrollment(self, enrollment, make_class, teacher):
        class_id = await make_class(capacity=1)
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.request_enrollment(student("s-2"), "s-2", class_id)

        result = await enrollment.orchestrator.complete_enrollment(teacher, "s-1", class_id)

        assert result.code == "completed"
        assert result.state is EnrollmentState.COMPLETED
        # The seat stays taken, so nobody is promoted
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 1
        waitlist = await enrollment.capacity.get_waitlist(class_id)
        assert [(e.student_id, e.notified_at) for e in waitlist] == [("s-2", None)]
        completed = await enrollment.audit.get_entries(class_id=class_id, action=AuditAction.COMPLETED)
        assert [(e.student_id, e.performed_by) for e in completed] == [("s-1", teacher.user_id)]

    async def test_completed_is_terminal(self, enrollment, make_class, teacher):
        class_id = await make_class()
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        await enrollment.orchestrator.complete_enrollment(teacher, "s-1", class_id)

        drop = await enrollment.orchestrator.drop_student(teacher, "s-1", class_id)
        again = await enrollment.orchestrator.complete_enrollment(teacher, "s-1", class_id)
        request = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert drop.code == "not_enrolled"
        assert again.code == "not_enrolled"
        assert request.code == "already_completed"
        assert request.state is EnrollmentState.COMPLETED

    async def test_students_cannot_complete(self, enrollment, make_class):
        class_id = await make_class()
        await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        result = await enrollment.orchestrator.complete_enrollment(student("s-1"), "s-1", class_id)

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_complete_class(self, enrollment, make_class, admin):
        class_id = await make_class(capacity=2)
        for student_id in ("s-1", "s-2", "s-3"):
            await enrollment.orchestrator.request_enrollment(student(student_id), student_id, class_id)

        completed = await enrollment.orchestrator.complete_class(admin, class_id)

        assert sorted(completed) == ["s-1", "s-2"]
        assert (await enrollment.capacity.get_waitlist_position(class_id, "s-3")) == 1
        assert await enrollment.detector.detect_conflicts(INSTITUTION_ID) == []


class TestAtomicity:
    """A failure inside a request leaves no partial state behind."""

    async def test_audit_failure_rolls_back_the_enrollment(
        self, enrollment, make_class, session_factory, monkeypatch
    ):
        class_id = await make_class(capacity=5)
        record = enrollment.audit.record

        async def failing_record(uow, **entry):
            if entry["action"] is AuditAction.ENROLLED:
                raise StoreUnavailableError("audit insert failed", operation="audit_record")
            return await record(uow, **entry)

        monkeypatch.setattr(enrollment.audit, "record", failing_record)

        with pytest.raises(StoreUnavailableError):
            await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        async with session_factory() as session:
            rows = await session.scalar(select(func.count()).select_from(EnrollmentModel))
        assert rows == 0
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 0
        assert not enrollment.store.lock_manager.is_locked(f"class:{class_id}")

        monkeypatch.undo()
        retry = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)
        assert retry.code == "enrolled"


class TestConcurrentRequests:
    """Full requests racing for the same class."""

    async def test_requests_fill_seats_then_waitlist(self, enrollment, make_class):
        class_id = await make_class(capacity=3, waitlist_capacity=5)

        results = await asyncio.gather(*(
            enrollment.orchestrator.request_enrollment(student(f"s-{i}"), f"s-{i}", class_id)
            for i in range(50)
        ))

        codes = [r.code for r in results]
        assert codes.count("enrolled") == 3
        assert codes.count("waitlisted") == 5
        assert codes.count("capacity_full") == 42
        occupancy = await enrollment.capacity.get_occupancy(class_id)
        assert (occupancy.enrolled, occupancy.waitlisted) == (3, 5)
        positions = sorted(r.waitlist_position for r in results if r.code == "waitlisted")
        assert positions == [1, 2, 3, 4, 5]
        assert await enrollment.audit.verify_chain(class_id) == (True, [])
