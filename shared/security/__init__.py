"""
Security Infrastructure

Principals, role-based authorization and hash-chained audit entries.
"""

from shared.security.audit import AuditLogEntry, verify_chain_integrity
from shared.security.rbac import Principal, RBACService, Role

__all__ = [
    "AuditLogEntry",
    "verify_chain_integrity",
    "Principal",
    "Role",
    "RBACService",
]
