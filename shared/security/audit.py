"""
Tamper-Evident Audit Logging

Immutable, hash-chained audit entries for enrollment state transitions.
Each entry contains the hash of the previous entry in its chain, so any
edit, deletion, or reordering of stored entries is detectable.
"""

import hashlib
import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class AuditLogEntry(BaseModel):
    """
    Immutable audit log entry with hash chain for tamper-evidence.

    Each entry contains:
    - The transition (student, class, action, from/to status)
    - Hash of previous entry
    - Self hash
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    id: str = Field(default_factory=lambda: str(uuid4()))
    sequence_number: int = Field(..., ge=0, description="Position within the chain")

    # Transition
    student_id: str
    class_id: str
    action: str = Field(..., description="Audited action, e.g. enrolled or dropped")
    performed_by: str
    reason: str | None = None
    previous_status: str | None = None
    new_status: str | None = None

    # Timing
    timestamp: datetime

    # Additional Data
    details: dict[str, Any] = Field(default_factory=dict)

    # Tamper-Evidence (Hash Chain)
    previous_hash: str | None = Field(
        default=None, description="Hash of previous audit entry"
    )
    entry_hash: str = Field(..., description="Hash of this entry")

    @classmethod
    def create(
        cls,
        sequence_number: int,
        student_id: str,
        class_id: str,
        action: str,
        performed_by: str,
        timestamp: datetime,
        previous_hash: str | None = None,
        reason: str | None = None,
        previous_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> "AuditLogEntry":
        """
        Factory method to create audit log entry with computed hash.

        Args:
            sequence_number: Position in the chain
            student_id: Student the transition concerns
            class_id: Class the transition concerns
            action: Action performed
            performed_by: Principal id (or "system")
            timestamp: When the transition happened
            previous_hash: Hash of previous entry (None for first entry)

        Returns:
            AuditLogEntry: New audit log entry with hash
        """
        entry_data = {
            "sequence_number": sequence_number,
            "student_id": student_id,
            "class_id": class_id,
            "action": action,
            "performed_by": performed_by,
            "reason": reason,
            "previous_status": previous_status,
            "new_status": new_status,
            "timestamp": timestamp,
            "details": details or {},
            "previous_hash": previous_hash,
        }

        entry_hash = cls._compute_hash(entry_data)

        return cls(**entry_data, entry_hash=entry_hash)

    @staticmethod
    def _compute_hash(entry_data: dict[str, Any]) -> str:
        """
        Compute SHA-256 hash of entry data.

        Args:
            entry_data: Entry data dictionary

        Returns:
            str: Hexadecimal hash string
        """
        # id is storage identity, not content
        hashable_data = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in entry_data.items()
            if k not in ("id", "entry_hash")
        }

        json_str = json.dumps(hashable_data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def verify_hash(self) -> bool:
        """
        Verify that entry hash is valid.

        Returns:
            bool: True if hash is valid
        """
        data = self.model_dump(exclude={"id", "entry_hash"})
        computed_hash = self._compute_hash(data)
        return computed_hash == self.entry_hash

    def verify_chain(self, previous_entry: Optional["AuditLogEntry"]) -> bool:
        """
        Verify hash chain link with previous entry.

        Args:
            previous_entry: Previous audit log entry (None if this is first)

        Returns:
            bool: True if chain is valid
        """
        if previous_entry is None:
            return self.previous_hash is None and self.sequence_number == 0

        return (
            self.previous_hash == previous_entry.entry_hash
            and self.sequence_number == previous_entry.sequence_number + 1
        )


def verify_chain_integrity(entries: Iterable[AuditLogEntry]) -> tuple[bool, list[str]]:
    """
    Verify a chain of entries ordered by sequence number.

    Args:
        entries: Entries of one chain, ascending sequence order

    Returns:
        Tuple of (is_valid, list of violation descriptions)
    """
    violations: list[str] = []
    previous_entry: AuditLogEntry | None = None

    for entry in entries:
        if not entry.verify_hash():
            violations.append(f"Sequence {entry.sequence_number}: Invalid entry hash")

        if not entry.verify_chain(previous_entry):
            violations.append(f"Sequence {entry.sequence_number}: Broken hash chain")

        previous_entry = entry

    is_valid = len(violations) == 0

    if is_valid:
        logger.debug("Audit chain verification passed")
    else:
        logger.warning(
            "Audit chain verification failed",
            violations_count=len(violations),
            violations=violations,
        )

    return is_valid, violations
