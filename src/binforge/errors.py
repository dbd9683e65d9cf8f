"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across pipeline phases."""

    VALIDATION = "E_VALIDATION"
    INVALID_TRIPLET = "E_INVALID_TRIPLET"
    INTEGRITY_MISMATCH = "E_INTEGRITY_MISMATCH"
    REVISION_NOT_FOUND = "E_REVISION_NOT_FOUND"
    FETCH_FAILED = "E_FETCH_FAILED"
    UNSATISFIED_DEPENDENCIES = "E_UNSATISFIED_DEPENDENCIES"
    MISSING_PRODUCTS = "E_MISSING_PRODUCTS"
    RUN_FAILED = "E_RUN_FAILED"
    RUN_TIMED_OUT = "E_RUN_TIMED_OUT"
    AUDIT_FATAL = "E_AUDIT_FATAL"
    HASH_MISMATCH = "E_HASH_MISMATCH"
    POLICY = "E_POLICY"
    CONFIG = "E_CONFIG"
    INTERNAL = "E_INTERNAL"


class BinforgeError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class InvalidTriplet(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INVALID_TRIPLET, hint=hint, context=context)


class IntegrityMismatch(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INTEGRITY_MISMATCH, hint=hint, context=context)


class RevisionNotFound(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.REVISION_NOT_FOUND, hint=hint, context=context)


class FetchFailed(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH_FAILED, hint=hint, context=context)


class UnsatisfiedDependencies(BinforgeError):
    """Raised after every dependency request was attempted and some failed."""

    missing: tuple[str, ...]

    def __init__(
        self,
        message: str,
        *,
        missing: Sequence[str] = (),
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code=ErrorCode.UNSATISFIED_DEPENDENCIES,
            hint=hint,
            context=context,
        )
        self.missing = tuple(missing)


class MissingProducts(BinforgeError):
    """Raised once per platform, listing every declared product that was not found."""

    missing: tuple[str, ...]

    def __init__(
        self,
        message: str,
        *,
        missing: Sequence[str] = (),
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MISSING_PRODUCTS, hint=hint, context=context)
        self.missing = tuple(missing)


class RunFailed(BinforgeError):
    """The build script exited nonzero, was signalled, or could not be started."""

    output: str
    returncode: int | None

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        returncode: int | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RUN_FAILED, hint=hint, context=context)
        self.output = output
        self.returncode = returncode


class RunCancelled(RunFailed):
    """The attempt was cancelled from outside while the script was running."""


class RunTimedOut(BinforgeError):
    output: str
    timeout: float

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        timeout: float = 0.0,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RUN_TIMED_OUT, hint=hint, context=context)
        self.output = output
        self.timeout = timeout


class AuditFatal(BinforgeError):
    """Raised when the audit of one platform produced at least one fatal finding."""

    category: str
    findings: tuple[object, ...]

    def __init__(
        self,
        message: str,
        *,
        category: str,
        findings: Sequence[object] = (),
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.AUDIT_FATAL, hint=hint, context=context)
        self.category = category
        self.findings = tuple(findings)


class HashMismatch(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.HASH_MISMATCH, hint=hint, context=context)


class PolicyError(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class ConfigError(BinforgeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class BuildCrashed(BinforgeError):
    """An unexpected exception escaped one platform's pipeline."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INTERNAL, hint=hint, context=context)


__all__ = [
    "AuditFatal",
    "BinforgeError",
    "BuildCrashed",
    "ConfigError",
    "ErrorCode",
    "FetchFailed",
    "HashMismatch",
    "IntegrityMismatch",
    "InvalidTriplet",
    "MissingProducts",
    "PolicyError",
    "RevisionNotFound",
    "RunCancelled",
    "RunFailed",
    "RunTimedOut",
    "UnsatisfiedDependencies",
    "ValidationError",
]
