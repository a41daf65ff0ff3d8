"""
Enrollment Service Database Models

SQLAlchemy models for classes, enrollments, waitlists, approval requests,
invitations, the audit chain, conflicts, and override requests.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from shared.database.postgres import Base
from shared.domain.clock import utc_now


def _new_id() -> str:
    return str(uuid4())


class ClassModel(Base):
    """Class (section) with its enrollment configuration and seat counters."""

    __tablename__ = "classes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    institution_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    department_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    instructor_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Enrollment configuration
    enrollment_mode: Mapped[str] = mapped_column(String(20), default="open", nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    waitlist_capacity: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    allow_waitlist: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_waitlist_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_justification: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Dates
    enrollment_start: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    enrollment_end: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    drop_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    withdraw_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Seat counters
    current_enrollment: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    override_seats: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Metadata
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)


class PrerequisiteModel(Base):
    """Prerequisite attached to a class."""

    __tablename__ = "class_prerequisites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    requirement: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strict: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class RestrictionModel(Base):
    """Enrollment restriction attached to a class."""

    __tablename__ = "enrollment_restrictions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    condition: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    overridable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class EnrollmentModel(Base):
    """
    Enrollment record (never deleted).

    At most one record per (student, class) is in an active status
    (enrolled or waitlisted); terminal records are kept as history.
    """

    __tablename__ = "enrollments"
    __table_args__ = (Index("ix_enrollments_student_class", "student_id", "class_id"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    enrolled_by: Mapped[str] = mapped_column(String(64), nullable=False)
    via_override: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # Timestamps
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dropped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class WaitlistEntryModel(Base):
    """Waitlist entry; a non-null notification_expires_at in the future is a held seat."""

    __tablename__ = "waitlist_entries"
    __table_args__ = (UniqueConstraint("class_id", "student_id", name="uq_waitlist_class_student"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("enrollments.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    join_sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_probability: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notification_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EnrollmentRequestModel(Base):
    """Approval request for a restricted class."""

    __tablename__ = "enrollment_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class ClassInvitationModel(Base):
    """Invitation to an invitation-only class."""

    __tablename__ = "class_invitations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    invited_by: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EnrollmentAuditLogModel(Base):
    """
    Append-only audit entry, hash-chained per class.

    Rows are never updated or deleted.
    """

    __tablename__ = "enrollment_audit_log"
    __table_args__ = (
        UniqueConstraint("class_id", "sequence_number", name="uq_audit_class_sequence"),
        Index("ix_audit_action_timestamp", "action", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    class_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(30), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class ConflictRecordModel(Base):
    """Anomaly found by a detection sweep."""

    __tablename__ = "enrollment_conflicts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    institution_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fingerprint: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    affected_students: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    class_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False, index=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ConflictResolutionModel(Base):
    """Resolution applied to a conflict (the resolution log)."""

    __tablename__ = "conflict_resolutions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conflict_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("enrollment_conflicts.id"), nullable=False, index=True
    )
    resolution_type: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    action_taken: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_by: Mapped[str] = mapped_column(String(64), nullable=False)
    resolved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    affected_students: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class OverrideRequestModel(Base):
    """Administrative override request and its decision."""

    __tablename__ = "enrollment_overrides"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    institution_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    class_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("classes.id"), nullable=False, index=True
    )
    override_type: Mapped[str] = mapped_column(String(40), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    requester_role: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
