"""Governance module for Groundwork: tamper-evident audit logging."""

from groundwork.governance.audit import AuditEntry, AuditLogger

__all__ = ["AuditEntry", "AuditLogger"]
