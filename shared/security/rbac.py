"""
Role-Based Access Control (RBAC)

Principals, roles, and the authorization checks shared by the enrollment
components. Every check is tenant-scoped: a principal only acts inside its
own institution, except system administrators.
"""

from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from shared.domain.exceptions import AuthorizationError

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    """Roles a principal may act under."""

    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    SYSTEM_ADMIN = "system_admin"


ADMIN_ROLES = frozenset({Role.DEPARTMENT_ADMIN, Role.INSTITUTION_ADMIN, Role.SYSTEM_ADMIN})
STAFF_ROLES = ADMIN_ROLES | {Role.TEACHER}


class Principal(BaseModel):
    """Authenticated actor on whose behalf an operation runs."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    institution_id: str
    role: Role

    @classmethod
    def system(cls, institution_id: str) -> "Principal":
        """Principal used for automatic actions (auto-approval, sweeps)."""
        return cls(user_id="system", institution_id=institution_id, role=Role.SYSTEM_ADMIN)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class RBACService:
    """
    Role-Based Access Control service.

    Evaluates whether a principal may act on a class or on a student's behalf.
    Methods named ``can_*`` answer a question; ``require_*`` raise
    AuthorizationError when the answer is no.
    """

    def same_tenant(self, principal: Principal, institution_id: str) -> bool:
        """Check the principal belongs to the institution (system admins span all)."""
        return principal.role is Role.SYSTEM_ADMIN or principal.institution_id == institution_id

    def can_review_enrollment(
        self,
        principal: Principal,
        institution_id: str,
        instructor_id: str | None,
    ) -> bool:
        """
        Check if principal may approve or deny requests for a class.

        Args:
            principal: Acting principal
            institution_id: Institution owning the class
            instructor_id: Instructor assigned to the class, if any

        Returns:
            bool: True for the class instructor or an administrator of the institution
        """
        if not self.same_tenant(principal, institution_id):
            return False
        if principal.is_admin:
            return True
        return principal.role is Role.TEACHER and instructor_id is not None and principal.user_id == instructor_id

    def can_act_for_student(
        self,
        principal: Principal,
        student_id: str,
        institution_id: str,
        instructor_id: str | None = None,
    ) -> bool:
        """Students act for themselves; the class instructor and admins act for anyone."""
        if not self.same_tenant(principal, institution_id):
            return False
        if principal.role is Role.STUDENT:
            return principal.user_id == student_id
        return self.can_review_enrollment(principal, institution_id, instructor_id)

    def require_reviewer(
        self,
        principal: Principal,
        institution_id: str,
        instructor_id: str | None,
        action: str,
    ) -> None:
        """
        Raises:
            AuthorizationError: If principal may not review this class
        """
        if not self.can_review_enrollment(principal, institution_id, instructor_id):
            logger.warning(
                "Review denied",
                user_id=principal.user_id,
                role=principal.role.value,
                action=action,
            )
            raise AuthorizationError(
                f"{principal.role.value} {principal.user_id} may not {action} for this class",
                resource="class",
                action=action,
            )

    def require_student_access(
        self,
        principal: Principal,
        student_id: str,
        institution_id: str,
        instructor_id: str | None,
        action: str,
    ) -> None:
        """
        Raises:
            AuthorizationError: If principal may not act for the student
        """
        if not self.can_act_for_student(principal, student_id, institution_id, instructor_id):
            logger.warning(
                "Student access denied",
                user_id=principal.user_id,
                role=principal.role.value,
                student_id=student_id,
                action=action,
            )
            raise AuthorizationError(
                f"{principal.user_id} may not {action} for student {student_id}",
                resource="enrollment",
                action=action,
            )

    def require_admin(self, principal: Principal, institution_id: str, action: str) -> None:
        """
        Raises:
            AuthorizationError: If principal is not an administrator of the institution
        """
        if not (principal.is_admin and self.same_tenant(principal, institution_id)):
            raise AuthorizationError(
                f"{action} requires an administrator of the institution",
                resource="institution",
                action=action,
            )
