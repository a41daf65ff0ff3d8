"""Unit tests for the hash-chained enrollment audit log."""

from datetime import datetime

from sqlalchemy import update

from services.enrollment_service.models import EnrollmentAuditLogModel
from services.enrollment_service.schemas import AuditAction
from shared.security.audit import AuditLogEntry, verify_chain_integrity

T0 = datetime(2026, 1, 12, 9, 0, 0)


def make_chain(length: int) -> list[AuditLogEntry]:
    entries: list[AuditLogEntry] = []
    for sequence in range(length):
        entries.append(AuditLogEntry.create(
            sequence_number=sequence,
            student_id=f"s-{sequence}",
            class_id="c-1",
            action="enrolled",
            performed_by="system",
            timestamp=T0,
            previous_hash=entries[-1].entry_hash if entries else None,
            details={"enrolled_count": sequence + 1},
        ))
    return entries


class TestAuditLogEntry:
    """Tests for AuditLogEntry hashing."""

    def test_fresh_chain_verifies(self):
        is_valid, violations = verify_chain_integrity(make_chain(4))

        assert is_valid is True
        assert violations == []

    def test_modified_entry_is_detected(self):
        chain = make_chain(3)
        chain[1] = chain[1].model_copy(update={"performed_by": "mallory"})

        is_valid, violations = verify_chain_integrity(chain)

        assert is_valid is False
        assert violations == ["Sequence 1: Invalid entry hash"]

    def test_removed_entry_breaks_the_chain(self):
        chain = make_chain(3)
        del chain[1]

        is_valid, violations = verify_chain_integrity(chain)

        assert is_valid is False
        assert "Sequence 2: Broken hash chain" in violations

    def test_first_entry_must_start_the_chain(self):
        entry = AuditLogEntry.create(
            sequence_number=1,
            student_id="s-1",
            class_id="c-1",
            action="enrolled",
            performed_by="system",
            timestamp=T0,
        )

        assert entry.verify_hash() is True
        assert entry.verify_chain(None) is False


class TestEnrollmentAuditLog:
    """Tests for the persisted per-class chains."""

    async def test_transitions_form_one_chain_per_class(self, enrollment, make_class):
        algorithms = await make_class("Algorithms", capacity=1)
        databases = await make_class("Databases", capacity=1)

        await enrollment.capacity.allocate(algorithms, "s-1")
        await enrollment.capacity.allocate(algorithms, "s-2")
        await enrollment.capacity.allocate(databases, "s-3")

        entries = await enrollment.audit.get_entries(class_id=algorithms)
        assert [e.sequence_number for e in entries] == [0, 1]
        assert [e.action for e in entries] == [AuditAction.ENROLLED.value, AuditAction.WAITLISTED.value]
        assert entries[1].previous_hash == entries[0].entry_hash

        assert await enrollment.audit.verify_chain(algorithms) == (True, [])
        assert await enrollment.audit.verify_chain(databases) == (True, [])

    async def test_filters(self, enrollment, make_class):
        class_id = await make_class(capacity=1)
        await enrollment.capacity.allocate(class_id, "s-1")
        await enrollment.capacity.allocate(class_id, "s-2")

        waitlisted = await enrollment.audit.get_entries(class_id=class_id, action=AuditAction.WAITLISTED)
        by_student = await enrollment.audit.get_entries(student_id="s-1")

        assert [e.student_id for e in waitlisted] == ["s-2"]
        assert [e.action for e in by_student] == [AuditAction.ENROLLED.value]

    async def test_tampering_in_storage_is_detected(self, enrollment, make_class, session_factory):
        class_id = await make_class(capacity=5)
        for student_id in ("s-1", "s-2", "s-3"):
            await enrollment.capacity.allocate(class_id, student_id)

        async with session_factory() as session:
            await session.execute(
                update(EnrollmentAuditLogModel)
                .where(
                    EnrollmentAuditLogModel.class_id == class_id,
                    EnrollmentAuditLogModel.sequence_number == 1,
                )
                .values(student_id="s-99")
            )
            await session.commit()

        is_valid, violations = await enrollment.audit.verify_chain(class_id)

        assert is_valid is False
        assert violations == ["Sequence 1: Invalid entry hash"]
