"""Binary audit: linkage, ABI and relocatability checks over a built prefix."""

from .engine import LICENSE_DIR, audit_prefix
from .findings import AuditFinding, AuditReport, AuditWarning, Severity
from .formats import (
    BinaryFormat,
    BinaryInfo,
    ElfFormat,
    MachOFormat,
    PeFormat,
    detect_format,
)
from .policy import AuditPolicy, RuntimeSupportRule

__all__ = [
    "AuditFinding",
    "AuditPolicy",
    "AuditReport",
    "AuditWarning",
    "BinaryFormat",
    "BinaryInfo",
    "ElfFormat",
    "LICENSE_DIR",
    "MachOFormat",
    "PeFormat",
    "RuntimeSupportRule",
    "Severity",
    "audit_prefix",
    "detect_format",
]
