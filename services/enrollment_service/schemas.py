"""
Enrollment Service Schemas

Enumerations, value objects and typed results shared by the enrollment
components. Results are returned, not raised, for every error category
except ``system``.
"""

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticCustomError

from shared.domain.exceptions import DomainException, ErrorCategory


class EnrollmentMode(str, Enum):
    OPEN = "open"
    RESTRICTED = "restricted"
    INVITATION_ONLY = "invitation_only"


class EnrollmentStatus(str, Enum):
    """Persisted status of an Enrollment record."""

    ENROLLED = "enrolled"
    WAITLISTED = "waitlisted"
    DROPPED = "dropped"
    COMPLETED = "completed"


ACTIVE_ENROLLMENT_STATUSES = (EnrollmentStatus.ENROLLED.value, EnrollmentStatus.WAITLISTED.value)
SEATED_ENROLLMENT_STATUSES = (EnrollmentStatus.ENROLLED.value, EnrollmentStatus.COMPLETED.value)


class EnrollmentState(str, Enum):
    """State reported to callers for one enrollment request."""

    REQUESTED = "requested"
    ELIGIBILITY_FAILED = "eligibility_failed"
    ENROLLED = "enrolled"
    WAITLISTED = "waitlisted"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    DENIED = "denied"
    EXPIRED = "expired"
    DROPPED = "dropped"
    COMPLETED = "completed"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class PrerequisiteType(str, Enum):
    COURSE = "course"
    GRADE = "grade"
    YEAR = "year"
    MAJOR = "major"
    GPA = "gpa"
    CUSTOM = "custom"


class RestrictionType(str, Enum):
    YEAR_LEVEL = "year_level"
    MAJOR = "major"
    DEPARTMENT = "department"
    GPA = "gpa"
    INSTITUTION = "institution"
    CUSTOM = "custom"


class AuditAction(str, Enum):
    """Actions recorded in the enrollment audit chain."""

    REQUESTED = "requested"
    ENROLLED = "enrolled"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"
    ELIGIBILITY_FAILED = "eligibility_failed"
    PROMOTION_OFFERED = "promotion_offered"
    OFFER_EXPIRED = "offer_expired"
    OFFER_DECLINED = "offer_declined"
    LEFT_WAITLIST = "left_waitlist"
    DROPPED = "dropped"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    INVITED = "invited"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    OVERRIDE_APPLIED = "override_applied"
    COMPLETED = "completed"
    PRIORITY_UPDATED = "priority_updated"


class ReasonSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# ============================================================================
# Class configuration
# ============================================================================


class ConfigIssue(BaseModel):
    """One configuration error or warning."""

    model_config = ConfigDict(frozen=True)

    code: str
    field: str | None = None
    message: str


class ConfigValidationResult(BaseModel):
    valid: bool
    errors: list[ConfigIssue] = Field(default_factory=list)
    warnings: list[ConfigIssue] = Field(default_factory=list)

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ConfigValidationResult":
        errors: list[ConfigIssue] = []
        for error in exc.errors():
            if error["type"] == "invalid_enrollment_config":
                errors.extend(ConfigIssue(**issue) for issue in error["ctx"]["issues"])
            else:
                errors.append(
                    ConfigIssue(
                        code="INVALID_FIELD",
                        field=".".join(str(part) for part in error["loc"]) or None,
                        message=error["msg"],
                    )
                )
        return cls(valid=False, errors=errors)


class ClassEnrollmentConfig(BaseModel):
    """
    Enrollment configuration of a class.

    Constructing an instance validates it; an invalid configuration raises
    pydantic's ValidationError carrying the structured issues. Use
    validate_enrollment_config() to get errors and warnings without raising.
    """

    model_config = ConfigDict(frozen=True)

    enrollment_mode: EnrollmentMode = EnrollmentMode.OPEN
    capacity: int = 30
    waitlist_capacity: int = 10
    enrollment_start: datetime | None = None
    enrollment_end: datetime | None = None
    drop_deadline: datetime | None = None
    withdraw_deadline: datetime | None = None
    auto_approve: bool = False
    requires_justification: bool = False
    allow_waitlist: bool = True
    max_waitlist_position: int | None = None

    @model_validator(mode="after")
    def _reject_invalid(self) -> "ClassEnrollmentConfig":
        errors, _ = self.issues()
        if errors:
            raise PydanticCustomError(
                "invalid_enrollment_config",
                "Invalid enrollment configuration: {summary}",
                {
                    "summary": "; ".join(issue.message for issue in errors),
                    "issues": [issue.model_dump() for issue in errors],
                },
            )
        return self

    def issues(self, current_enrollment: int = 0) -> tuple[list[ConfigIssue], list[ConfigIssue]]:
        """
        Collect configuration errors and warnings.

        Args:
            current_enrollment: Students already enrolled (for the capacity warning)

        Returns:
            Tuple of (errors, warnings)
        """
        errors: list[ConfigIssue] = []
        warnings: list[ConfigIssue] = []

        if self.capacity < 1:
            errors.append(ConfigIssue(
                code="INVALID_CAPACITY", field="capacity",
                message="Capacity must be at least 1",
            ))
        elif self.capacity < current_enrollment:
            warnings.append(ConfigIssue(
                code="CAPACITY_BELOW_ENROLLMENT", field="capacity",
                message=f"Capacity ({self.capacity}) is below current enrollment ({current_enrollment})",
            ))

        if self.waitlist_capacity < 0:
            errors.append(ConfigIssue(
                code="INVALID_WAITLIST_CAPACITY", field="waitlist_capacity",
                message="Waitlist capacity cannot be negative",
            ))

        if self.enrollment_start and self.enrollment_end and self.enrollment_start >= self.enrollment_end:
            errors.append(ConfigIssue(
                code="INVALID_DATE_RANGE", field="enrollment_end",
                message="Enrollment start must be before enrollment end",
            ))

        if self.drop_deadline and self.withdraw_deadline and self.drop_deadline >= self.withdraw_deadline:
            errors.append(ConfigIssue(
                code="INVALID_DEADLINE_ORDER", field="withdraw_deadline",
                message="Drop deadline must be before withdraw deadline",
            ))

        if self.max_waitlist_position is not None and (
            self.max_waitlist_position < 1 or self.max_waitlist_position > self.waitlist_capacity
        ):
            errors.append(ConfigIssue(
                code="INVALID_WAITLIST_POSITION", field="max_waitlist_position",
                message="Max waitlist position must be between 1 and the waitlist capacity",
            ))

        if self.auto_approve and self.enrollment_mode is EnrollmentMode.INVITATION_ONLY:
            warnings.append(ConfigIssue(
                code="INCOMPATIBLE_SETTING", field="auto_approve",
                message="Auto-approve has no effect on invitation-only classes",
            ))

        return errors, warnings


def validate_enrollment_config(
    data: Mapping[str, Any], current_enrollment: int = 0
) -> ConfigValidationResult:
    """Validate raw configuration data, returning errors and warnings instead of raising."""
    try:
        config = ClassEnrollmentConfig.model_validate(dict(data))
    except PydanticValidationError as exc:
        return ConfigValidationResult.from_pydantic(exc)

    _, warnings = config.issues(current_enrollment)
    return ConfigValidationResult(valid=True, warnings=warnings)


# ============================================================================
# Rules engine inputs and outputs
# ============================================================================


class StudentFacts(BaseModel):
    """Academic facts about a student, supplied by the facts provider."""

    model_config = ConfigDict(frozen=True)

    student_id: str
    institution_id: str | None = None
    department: str | None = None
    major: str | None = None
    year: int | None = None
    gpa: float | None = None
    completed_courses: frozenset[str] = frozenset()
    grades: dict[str, str] = Field(default_factory=dict)
    priority: int = 0


class PrerequisiteRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: PrerequisiteType
    requirement: str
    description: str | None = None
    strict: bool = True


class RestrictionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: RestrictionType
    condition: str
    description: str | None = None
    overridable: bool = False


class ClassRules(BaseModel):
    """Everything the rules engine needs to know about a class."""

    model_config = ConfigDict(frozen=True)

    class_id: str
    institution_id: str | None = None
    enrollment_start: datetime | None = None
    enrollment_end: datetime | None = None
    prerequisites: list[PrerequisiteRule] = Field(default_factory=list)
    restrictions: list[RestrictionRule] = Field(default_factory=list)


class EligibilityReason(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    message: str
    severity: ReasonSeverity = ReasonSeverity.ERROR
    overridable: bool = False

    @property
    def blocking(self) -> bool:
        return self.severity is ReasonSeverity.ERROR and not self.overridable

    @property
    def is_window(self) -> bool:
        return self.type in ("enrollment_not_open", "enrollment_closed")


class EligibilityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    eligible: bool
    reasons: list[EligibilityReason] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)

    @property
    def blocking_reasons(self) -> list[EligibilityReason]:
        return [reason for reason in self.reasons if reason.blocking]


# ============================================================================
# Allocation results
# ============================================================================


class Enrolled(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["enrolled"] = "enrolled"
    enrollment_id: str


class Waitlisted(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["waitlisted"] = "waitlisted"
    enrollment_id: str
    position: int
    estimated_probability: float


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["rejected"] = "rejected"
    reason: str


AllocationResult = Annotated[Enrolled | Waitlisted | Rejected, Field(discriminator="outcome")]


class WaitlistOffer(BaseModel):
    """A seat held for a promoted waitlisted student."""

    model_config = ConfigDict(frozen=True)

    class_id: str
    student_id: str
    offered_at: datetime
    expires_at: datetime


class WaitlistEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    student_id: str
    position: int
    priority: int
    estimated_probability: float
    added_at: datetime
    notified_at: datetime | None = None
    notification_expires_at: datetime | None = None


class ClassOccupancy(BaseModel):
    """Seat counters of a class at one instant."""

    class_id: str
    capacity: int
    enrolled: int
    active_holds: int
    waitlisted: int
    waitlist_limit: int
    override_seats: int

    @property
    def available_seats(self) -> int:
        return max(0, self.capacity - self.enrolled - self.active_holds)


# ============================================================================
# Caller-facing results
# ============================================================================


class OperationResult(BaseModel):
    """Common shape of every typed result."""

    success: bool
    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: DomainException, **fields: Any):
        return cls(
            success=False,
            code=exc.code,
            message=exc.message,
            category=exc.category,
            details=exc.context,
            **fields,
        )


class EnrollmentResult(OperationResult):
    state: EnrollmentState | None = None
    enrollment_id: str | None = None
    request_id: str | None = None
    waitlist_position: int | None = None
    estimated_probability: float | None = None
    estimated_wait_time: str | None = None
    reasons: list[EligibilityReason] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class BulkSummary(BaseModel):
    enrolled: int = 0
    waitlisted: int = 0
    pending: int = 0
    rejected: int = 0


class BulkEnrollmentItem(BaseModel):
    student_id: str
    result: EnrollmentResult


class BulkEnrollmentResult(BaseModel):
    total_processed: int
    successful: int
    failed: int
    results: list[BulkEnrollmentItem]
    summary: BulkSummary


class EnrollmentRequestView(BaseModel):
    """Read model of an approval request."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    class_id: str
    status: RequestStatus
    justification: str | None = None
    requested_at: datetime
    expires_at: datetime
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_notes: str | None = None


class DecisionResult(OperationResult):
    request_id: str
    request_status: RequestStatus | None = None
    state: EnrollmentState | None = None
    enrollment_id: str | None = None
    waitlist_position: int | None = None


# ============================================================================
# Conflicts and overrides
# ============================================================================


class ConflictType(str, Enum):
    CAPACITY_EXCEEDED = "capacity_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    PREREQUISITE_VIOLATION = "prerequisite_violation"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ResolutionType(str, Enum):
    MANUAL_OVERRIDE = "manual_override"
    CAPACITY_INCREASE = "capacity_increase"
    STUDENT_TRANSFER = "student_transfer"
    POLICY_EXCEPTION = "policy_exception"
    DISMISS = "dismiss"


class ConflictRecord(BaseModel):
    """Read model of a detected conflict."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    institution_id: str
    fingerprint: str
    type: ConflictType
    severity: ConflictSeverity
    description: str
    affected_students: int
    class_id: str | None = None
    student_id: str | None = None
    status: ConflictStatus
    detected_at: datetime
    resolved_at: datetime | None = None


class ConflictResolution(BaseModel):
    """Resolution submitted for a conflict."""

    resolution_type: ResolutionType
    description: str = Field(..., min_length=1)
    action_taken: str = Field(..., min_length=1)
    affected_students: list[str] = Field(default_factory=list)
    notes: str | None = None


class ResolutionResult(OperationResult):
    conflict_id: str
    status: ConflictStatus | None = None


class OverrideType(str, Enum):
    ENROLLMENT_OVERRIDE = "enrollment_override"
    PREREQUISITE_OVERRIDE = "prerequisite_override"
    CAPACITY_OVERRIDE = "capacity_override"
    DEADLINE_OVERRIDE = "deadline_override"


class OverrideStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class OverrideResult(OperationResult):
    override_id: str | None = None
    status: OverrideStatus | None = None
    applied_state: EnrollmentState | None = None
