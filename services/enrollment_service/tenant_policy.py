"""
Tenant Enrollment Policy

Per-institution thresholds and the role-scoped override capability table.
Institutions without an explicit policy get one built from Settings.
"""

import structlog
from pydantic import BaseModel, ConfigDict, Field

from services.enrollment_service.schemas import OverrideType
from shared.config import Settings
from shared.security.rbac import Role

logger = structlog.get_logger(__name__)


class OverrideCapability(BaseModel):
    """What one role may do with one override type."""

    model_config = ConfigDict(frozen=True)

    override_type: OverrideType
    requires_approval: bool
    can_approve: bool
    max_per_period: int | None = None
    period_days: int = 30
    requires_justification: bool = False


def default_override_capabilities() -> dict[Role, list[OverrideCapability]]:
    """Capability table applied when a tenant does not define its own."""
    return {
        Role.SYSTEM_ADMIN: [
            OverrideCapability(override_type=override_type, requires_approval=False, can_approve=True)
            for override_type in OverrideType
        ],
        Role.INSTITUTION_ADMIN: [
            OverrideCapability(
                override_type=OverrideType.ENROLLMENT_OVERRIDE,
                requires_approval=False, can_approve=True,
            ),
            OverrideCapability(
                override_type=OverrideType.PREREQUISITE_OVERRIDE,
                requires_approval=True, can_approve=True,
            ),
            OverrideCapability(
                override_type=OverrideType.CAPACITY_OVERRIDE,
                requires_approval=False, can_approve=True,
                max_per_period=5, requires_justification=True,
            ),
            OverrideCapability(
                override_type=OverrideType.DEADLINE_OVERRIDE,
                requires_approval=False, can_approve=True,
            ),
        ],
        Role.DEPARTMENT_ADMIN: [
            OverrideCapability(
                override_type=OverrideType.PREREQUISITE_OVERRIDE,
                requires_approval=True, can_approve=True, max_per_period=10,
            ),
            OverrideCapability(
                override_type=OverrideType.CAPACITY_OVERRIDE,
                requires_approval=True, can_approve=False,
                max_per_period=3, requires_justification=True,
            ),
            OverrideCapability(
                override_type=OverrideType.DEADLINE_OVERRIDE,
                requires_approval=True, can_approve=True,
            ),
        ],
        Role.TEACHER: [
            OverrideCapability(
                override_type=OverrideType.PREREQUISITE_OVERRIDE,
                requires_approval=True, can_approve=False,
                max_per_period=5, requires_justification=True,
            ),
            OverrideCapability(
                override_type=OverrideType.CAPACITY_OVERRIDE,
                requires_approval=True, can_approve=False,
                max_per_period=2, requires_justification=True,
            ),
        ],
        Role.STUDENT: [],
    }


class TenantEnrollmentPolicy(BaseModel):
    """Enrollment thresholds and override capabilities of one institution."""

    model_config = ConfigDict(frozen=True)

    waitlist_hold_hours: int = Field(default=24, ge=1)
    request_expiry_days: int = Field(default=7, ge=1)
    suspicious_enrollment_threshold: int = Field(default=10, ge=1)
    suspicious_window_hours: int = Field(default=24, ge=1)
    bulk_window_threshold: int = Field(default=5, ge=1)
    bulk_window_minutes: int = Field(default=60, ge=1)
    override_capabilities: dict[Role, list[OverrideCapability]] = Field(
        default_factory=default_override_capabilities
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TenantEnrollmentPolicy":
        return cls(
            waitlist_hold_hours=settings.waitlist_hold_hours,
            request_expiry_days=settings.request_expiry_days,
            suspicious_enrollment_threshold=settings.suspicious_enrollment_threshold,
            suspicious_window_hours=settings.suspicious_window_hours,
            bulk_window_threshold=settings.bulk_window_threshold,
            bulk_window_minutes=settings.bulk_window_minutes,
        )

    def capabilities_for(self, role: Role) -> list[OverrideCapability]:
        return list(self.override_capabilities.get(role, []))

    def capability_for(self, role: Role, override_type: OverrideType) -> OverrideCapability | None:
        for capability in self.override_capabilities.get(role, []):
            if capability.override_type is override_type:
                return capability
        return None


class TenantPolicyRegistry:
    """Looks up the policy of an institution."""

    def __init__(self, settings: Settings, policies: dict[str, TenantEnrollmentPolicy] | None = None):
        self.default_policy = TenantEnrollmentPolicy.from_settings(settings)
        self._policies: dict[str, TenantEnrollmentPolicy] = dict(policies or {})

    def register(self, institution_id: str, policy: TenantEnrollmentPolicy) -> None:
        self._policies[institution_id] = policy
        logger.info("Tenant enrollment policy registered", institution_id=institution_id)

    def get(self, institution_id: str) -> TenantEnrollmentPolicy:
        return self._policies.get(institution_id, self.default_policy)
