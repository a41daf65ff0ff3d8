"""
Enrollment Audit Trail

Appends hash-chained entries to the enrollment audit log, one chain per
class. Appends happen inside the caller's unit of work while it holds the
class lock, so sequence numbers within a chain never collide.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select

from services.enrollment_service.models import EnrollmentAuditLogModel
from services.enrollment_service.schemas import AuditAction
from services.enrollment_service.store import EnrollmentStore, UnitOfWork
from shared.domain.clock import Clock, utc_now
from shared.security.audit import AuditLogEntry, verify_chain_integrity

logger = structlog.get_logger(__name__)


def _to_entry(row: EnrollmentAuditLogModel) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        sequence_number=row.sequence_number,
        student_id=row.student_id,
        class_id=row.class_id,
        action=row.action,
        performed_by=row.performed_by,
        reason=row.reason,
        previous_status=row.previous_status,
        new_status=row.new_status,
        timestamp=row.timestamp,
        details=row.details or {},
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
    )


class EnrollmentAuditLog:
    """Append-only audit log for enrollment transitions."""

    def __init__(self, store: EnrollmentStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def record(
        self,
        uow: UnitOfWork,
        *,
        student_id: str,
        class_id: str,
        action: AuditAction,
        performed_by: str,
        reason: str | None = None,
        previous_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """
        Append one entry to the class's chain.

        Args:
            uow: Unit of work holding the class lock
            student_id: Student the transition concerns
            class_id: Class the transition concerns
            action: Audited action
            performed_by: Principal id or "system"

        Returns:
            AuditLogEntry: The stored entry
        """
        last = await uow.scalar(
            select(EnrollmentAuditLogModel)
            .where(EnrollmentAuditLogModel.class_id == class_id)
            .order_by(EnrollmentAuditLogModel.sequence_number.desc())
            .limit(1),
            operation="audit_last_entry",
        )

        entry = AuditLogEntry.create(
            sequence_number=last.sequence_number + 1 if last else 0,
            student_id=student_id,
            class_id=class_id,
            action=action.value,
            performed_by=performed_by,
            timestamp=self.clock(),
            previous_hash=last.entry_hash if last else None,
            reason=reason,
            previous_status=previous_status,
            new_status=new_status,
            details=details,
        )

        uow.add(EnrollmentAuditLogModel(**entry.model_dump()))
        await uow.flush()

        logger.info(
            "Audit entry created",
            class_id=class_id,
            student_id=student_id,
            action=action.value,
            sequence=entry.sequence_number,
            performed_by=performed_by,
        )
        return entry

    async def get_entries(
        self,
        class_id: str | None = None,
        student_id: str | None = None,
        action: AuditAction | None = None,
        since: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> list[AuditLogEntry]:
        """
        Query audit entries with filters, oldest first.

        Args:
            class_id: Filter by class
            student_id: Filter by student
            action: Filter by action
            since: Only entries at or after this instant

        Returns:
            List of audit log entries
        """
        statement = select(EnrollmentAuditLogModel)
        if class_id:
            statement = statement.where(EnrollmentAuditLogModel.class_id == class_id)
        if student_id:
            statement = statement.where(EnrollmentAuditLogModel.student_id == student_id)
        if action:
            statement = statement.where(EnrollmentAuditLogModel.action == action.value)
        if since:
            statement = statement.where(EnrollmentAuditLogModel.timestamp >= since)
        statement = statement.order_by(
            EnrollmentAuditLogModel.class_id,
            EnrollmentAuditLogModel.sequence_number,
        )

        async with self.store.join(uow) as tx:
            rows = await tx.scalars(statement, operation="audit_entries")
        return [_to_entry(row) for row in rows]

    async def verify_chain(self, class_id: str) -> tuple[bool, list[str]]:
        """
        Verify integrity of one class's audit chain.

        Returns:
            Tuple of (is_valid, list of violation descriptions)
        """
        entries = await self.get_entries(class_id=class_id)
        return verify_chain_integrity(entries)
