"""Orchestrator configuration and results."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import cbor2

from binforge.audit import AuditPolicy, AuditReport
from binforge.dependencies import DependencyCatalog
from binforge.errors import BinforgeError, RunFailed, RunTimedOut, ValidationError
from binforge.observability import StructuredLogger
from binforge.packager import PackagedArtifact
from binforge.platforms import Platform
from binforge.policy import Policy
from binforge.runners import BuildRunner, ToolchainRegistry

_OUTPUT_TAIL = 4000


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Knobs for one :func:`binforge.autobuild` call.

    ``runner``, ``toolchains``, ``catalog`` and ``native_platform`` default to a
    local runner using the host compilers, an empty catalog and the detected
    host platform. ``timeout`` bounds only the build script, per platform.
    """

    parallel: int = 1
    timeout: float | None = None
    nproc: int = field(default_factory=lambda: os.cpu_count() or 1)
    keep_workspace: bool = False
    skip_audit: bool = False
    preferred_gcc_version: str | None = None
    output_dir: Path | None = None
    cache_dir: Path | None = None
    policy: Policy = field(default_factory=Policy)
    audit_policy: AuditPolicy = field(default_factory=AuditPolicy)
    runner: BuildRunner | None = None
    toolchains: ToolchainRegistry | None = None
    catalog: DependencyCatalog | None = None
    native_platform: Platform | None = None
    cancel_event: threading.Event | None = None

    def __post_init__(self) -> None:
        if self.parallel < 1:
            raise ValidationError("BuildOptions.parallel must be at least 1.")
        if self.nproc < 1:
            raise ValidationError("BuildOptions.nproc must be at least 1.")
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError("BuildOptions.timeout must be positive when set.")


@dataclass(frozen=True, slots=True)
class PlatformFailure:
    platform: Platform
    phase: str
    error: BinforgeError

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "platform": str(self.platform),
            "phase": self.phase,
            **self.error.to_dict(),
        }
        if isinstance(self.error, (RunFailed, RunTimedOut)) and self.error.output:
            payload["output_tail"] = self.error.output[-_OUTPUT_TAIL:]
        missing = getattr(self.error, "missing", None)
        if missing:
            payload["missing"] = list(missing)
        return payload


@dataclass(slots=True)
class AutobuildResult(Mapping[Platform, PackagedArtifact]):
    """Artifacts keyed by platform, plus a failure record for every platform that did not package."""

    name: str
    version: str
    artifacts: dict[Platform, PackagedArtifact] = field(default_factory=dict)
    failures: dict[Platform, PlatformFailure] = field(default_factory=dict)
    audits: dict[Platform, AuditReport] = field(default_factory=dict)
    report_paths: dict[Platform, Path] = field(default_factory=dict)
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def __getitem__(self, platform: Platform) -> PackagedArtifact:
        return self.artifacts[platform]

    def __iter__(self) -> Iterator[Platform]:
        return iter(self.artifacts)

    def __len__(self) -> int:
        return len(self.artifacts)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Re-raise the failure of the first failed platform in triplet order."""
        if not self.failures:
            return
        first = min(self.failures, key=str)
        raise self.failures[first].error

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "version": self.version,
            "artifacts": {
                str(platform): {
                    "archive": artifact.archive_path.name,
                    "sha256": artifact.content_hash,
                    "size": artifact.size,
                }
                for platform, artifact in self.artifacts.items()
            },
            "failures": {str(platform): failure.to_dict() for platform, failure in self.failures.items()},
        }


__all__ = ["AutobuildResult", "BuildOptions", "PackagedArtifact", "PlatformFailure"]
