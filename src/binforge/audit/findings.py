"""Audit findings and the per-platform report."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from binforge.errors import AuditFatal


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


class AuditWarning(UserWarning):
    """A non-blocking audit finding."""


@dataclass(frozen=True, slots=True)
class AuditFinding:
    severity: Severity
    category: str
    subject: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": self.severity.value,
            "category": self.category,
            "subject": self.subject,
            "message": self.message,
        }


@dataclass(slots=True)
class AuditReport:
    platform: str
    findings: list[AuditFinding] = field(default_factory=list)

    def add(self, severity: Severity, category: str, subject: str, message: str) -> AuditFinding:
        finding = AuditFinding(severity=severity, category=category, subject=subject, message=message)
        self.findings.append(finding)
        return finding

    @property
    def fatal(self) -> list[AuditFinding]:
        return [f for f in self.findings if f.severity is Severity.FATAL]

    @property
    def warnings(self) -> list[AuditFinding]:
        return [f for f in self.findings if f.severity is Severity.WARNING]

    @property
    def passed(self) -> bool:
        return not self.fatal

    def categories(self) -> set[str]:
        return {f.category for f in self.findings}

    def raise_for_fatal(self) -> None:
        fatal = self.fatal
        if not fatal:
            return
        raise AuditFatal(
            f"Audit failed with {len(fatal)} fatal finding(s).",
            category=fatal[0].category,
            findings=fatal,
            hint="Declare the missing dependencies or fix the build script.",
            context={
                "platform": self.platform,
                "findings": "; ".join(f"{f.category}: {f.subject}" for f in fatal),
            },
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "platform": self.platform,
            "passed": self.passed,
            "findings": [f.to_dict() for f in self.findings],
        }


__all__ = ["AuditFinding", "AuditReport", "AuditWarning", "Severity"]
