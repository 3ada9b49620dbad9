"""
Audit Package.

Exports AuditLogger and the audit report aggregator.
"""

from .aggregator import build_audit_report
from .audit_logger import AuditLogger

__all__ = ["AuditLogger", "build_audit_report"]
