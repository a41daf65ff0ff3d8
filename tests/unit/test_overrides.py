"""Unit tests for staff enrollment overrides."""

from datetime import timedelta

from services.enrollment_service.schemas import (
    AuditAction,
    EnrollmentState,
    OverrideStatus,
    OverrideType,
    PrerequisiteType,
)
from shared.domain.exceptions import ErrorCategory
from shared.security.rbac import Principal, Role
from tests.conftest import INSTITUTION_ID, student


class TestCapabilities:
    """Tests for get_override_capabilities()."""

    def test_students_have_none(self, enrollment):
        assert enrollment.overrides.get_override_capabilities(student("s-1")) == []

    def test_teacher_capabilities(self, enrollment, teacher):
        capabilities = {c.override_type: c for c in enrollment.overrides.get_override_capabilities(teacher)}

        assert set(capabilities) == {OverrideType.PREREQUISITE_OVERRIDE, OverrideType.CAPACITY_OVERRIDE}
        assert capabilities[OverrideType.CAPACITY_OVERRIDE].max_per_period == 2
        assert all(c.requires_approval and not c.can_approve for c in capabilities.values())

    def test_institution_admin_approval_requirements(self, enrollment, admin):
        capabilities = enrollment.overrides.get_override_capabilities(admin)

        assert len(capabilities) == 4
        assert [c.override_type for c in capabilities if c.requires_approval] == [
            OverrideType.PREREQUISITE_OVERRIDE
        ]


class TestRequestOverride:
    """Tests for request_override()."""

    async def test_admin_capacity_override_is_applied(self, enrollment, make_class, admin):
        class_id = await make_class(capacity=1, waitlist_capacity=0)
        await enrollment.capacity.allocate(class_id, "s-1")

        result = await enrollment.overrides.request_override(
            admin, "s-2", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Graduating senior"
        )

        assert result.success is True
        assert result.code == "override_applied"
        assert result.status is OverrideStatus.APPROVED
        assert result.applied_state is EnrollmentState.ENROLLED
        occupancy = await enrollment.capacity.get_occupancy(class_id)
        assert occupancy.enrolled == 2
        assert occupancy.override_seats == 1
        applied = await enrollment.audit.get_entries(class_id=class_id, action=AuditAction.OVERRIDE_APPLIED)
        assert [e.student_id for e in applied] == ["s-2"]

    async def test_prerequisite_override_bypasses_eligibility(
        self, enrollment, make_class, admin, department_admin
    ):
        class_id = await make_class()
        await enrollment.catalog.add_prerequisite(admin, class_id, PrerequisiteType.COURSE, "CS201")

        pending = await enrollment.overrides.request_override(
            admin, "s-1", class_id, OverrideType.PREREQUISITE_OVERRIDE
        )
        result = await enrollment.overrides.approve_override(pending.override_id, department_admin)
        repeat = await enrollment.orchestrator.request_enrollment(student("s-1"), "s-1", class_id)

        assert pending.code == "override_pending"
        assert result.applied_state is EnrollmentState.ENROLLED
        assert repeat.code == "already_enrolled"

    async def test_enrollment_override_bypasses_invitation_gate(self, enrollment, make_class, admin):
        class_id = await make_class(enrollment_mode="invitation_only")

        result = await enrollment.overrides.request_override(
            admin, "s-1", class_id, OverrideType.ENROLLMENT_OVERRIDE
        )

        assert result.applied_state is EnrollmentState.ENROLLED

    async def test_deadline_override_only_lifts_the_window(self, enrollment, make_class, admin, clock):
        window = {
            "enrollment_start": clock.now - timedelta(days=10),
            "enrollment_end": clock.now - timedelta(days=1),
        }
        open_late = await make_class("Late Registration", **window)
        with_prerequisite = await make_class("Seminar", **window)
        await enrollment.catalog.add_prerequisite(admin, with_prerequisite, PrerequisiteType.COURSE, "CS201")

        lifted = await enrollment.overrides.request_override(
            admin, "s-1", open_late, OverrideType.DEADLINE_OVERRIDE
        )
        refused = await enrollment.overrides.request_override(
            admin, "s-1", with_prerequisite, OverrideType.DEADLINE_OVERRIDE
        )

        assert lifted.applied_state is EnrollmentState.ENROLLED
        assert refused.success is False
        assert refused.code == "eligibility_failed"
        assert (await enrollment.capacity.get_occupancy(with_prerequisite)).enrolled == 0

    async def test_justification_required(self, enrollment, make_class, admin):
        class_id = await make_class()

        result = await enrollment.overrides.request_override(
            admin, "s-1", class_id, OverrideType.CAPACITY_OVERRIDE
        )

        assert result.success is False
        assert result.code == "justification_required"
        assert result.category is ErrorCategory.VALIDATION

    async def test_students_cannot_request(self, enrollment, make_class):
        class_id = await make_class()

        result = await enrollment.overrides.request_override(
            student("s-1"), "s-1", class_id, OverrideType.CAPACITY_OVERRIDE, reason="please"
        )

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_teacher_request_stays_pending(self, enrollment, make_class, teacher):
        class_id = await make_class(capacity=1)
        await enrollment.capacity.allocate(class_id, "s-1")

        result = await enrollment.overrides.request_override(
            teacher, "s-2", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        assert result.code == "override_pending"
        assert result.status is OverrideStatus.PENDING
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 1

    async def test_quota_per_period(self, enrollment, make_class, teacher, clock):
        class_id = await make_class()
        for student_id in ("s-1", "s-2"):
            await enrollment.overrides.request_override(
                teacher, student_id, class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
            )

        over_quota = await enrollment.overrides.request_override(
            teacher, "s-3", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )
        clock.advance(days=31)
        next_period = await enrollment.overrides.request_override(
            teacher, "s-3", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        assert over_quota.success is False
        assert over_quota.code == "override_quota_exceeded"
        assert next_period.code == "override_pending"


class TestOverrideDecisions:
    """Tests for approve_override() and deny_override()."""

    async def test_admin_approves_teacher_request(self, enrollment, make_class, teacher, admin):
        class_id = await make_class(capacity=1, waitlist_capacity=0)
        await enrollment.capacity.allocate(class_id, "s-1")
        pending = await enrollment.overrides.request_override(
            teacher, "s-2", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        result = await enrollment.overrides.approve_override(pending.override_id, admin, notes="ok")

        assert result.code == "override_approved"
        assert result.applied_state is EnrollmentState.ENROLLED
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 2

    async def test_requester_cannot_approve_own_request(self, enrollment, make_class, admin, department_admin):
        class_id = await make_class()
        await enrollment.catalog.add_prerequisite(admin, class_id, PrerequisiteType.COURSE, "CS201")
        pending = await enrollment.overrides.request_override(
            department_admin, "s-1", class_id, OverrideType.PREREQUISITE_OVERRIDE
        )
        other_department_admin = Principal(
            user_id="dept-admin-2", institution_id=INSTITUTION_ID, role=Role.DEPARTMENT_ADMIN
        )

        own = await enrollment.overrides.approve_override(pending.override_id, department_admin)
        other = await enrollment.overrides.approve_override(pending.override_id, other_department_admin)

        assert own.success is False
        assert own.category is ErrorCategory.AUTHORIZATION
        assert other.code == "override_approved"

    async def test_role_without_approval_right(self, enrollment, make_class, teacher, department_admin):
        class_id = await make_class()
        pending = await enrollment.overrides.request_override(
            teacher, "s-1", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        result = await enrollment.overrides.approve_override(pending.override_id, department_admin)

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_other_institution_cannot_approve(self, enrollment, make_class, teacher):
        class_id = await make_class()
        pending = await enrollment.overrides.request_override(
            teacher, "s-1", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )
        outsider = Principal(user_id="admin-9", institution_id="inst-2", role=Role.INSTITUTION_ADMIN)

        result = await enrollment.overrides.approve_override(pending.override_id, outsider)

        assert result.category is ErrorCategory.AUTHORIZATION

    async def test_deny(self, enrollment, make_class, teacher, admin):
        class_id = await make_class()
        pending = await enrollment.overrides.request_override(
            teacher, "s-1", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        missing_reason = await enrollment.overrides.deny_override(pending.override_id, admin, "")
        denied = await enrollment.overrides.deny_override(pending.override_id, admin, "Room is at fire limit")
        approve_after = await enrollment.overrides.approve_override(pending.override_id, admin)

        assert missing_reason.code == "reason_required"
        assert denied.code == "override_denied"
        assert denied.status is OverrideStatus.DENIED
        assert approve_after.code == "override_not_pending"
        assert (await enrollment.capacity.get_occupancy(class_id)).enrolled == 0

    async def test_denied_requests_free_quota(self, enrollment, make_class, teacher, admin):
        class_id = await make_class()
        first = await enrollment.overrides.request_override(
            teacher, "s-1", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )
        await enrollment.overrides.request_override(
            teacher, "s-2", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )
        await enrollment.overrides.deny_override(first.override_id, admin, "Not needed")

        third = await enrollment.overrides.request_override(
            teacher, "s-3", class_id, OverrideType.CAPACITY_OVERRIDE, reason="Lab partner"
        )

        assert third.code == "override_pending"

    async def test_unknown_override(self, enrollment, admin):
        result = await enrollment.overrides.approve_override("missing", admin)

        assert result.code == "override_not_found"
