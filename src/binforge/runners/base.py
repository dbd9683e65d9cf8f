"""Build-script execution: attempt state machine, environment contract and runner protocol.

One :class:`RunAttempt` drives exactly one script execution::

    PREPARED -> RUNNING -> SUCCEEDED
                        -> FAILED      (nonzero exit, signal, cancellation)
                        -> TIMED_OUT   (wall-clock budget exhausted)

The script sees a fixed environment (see :func:`build_environment`) and a
preamble that enables ``set -e``, defines ``install_license`` and creates the
prefix's ``bin``, ``lib`` and ``include`` directories.
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import Protocol

from binforge.errors import BinforgeError, RunCancelled, RunFailed, RunTimedOut, ValidationError
from binforge.observability import StructuredLogger
from binforge.platforms import Platform
from binforge.runners.process import ProcessOutcome
from binforge.runners.toolchain import ToolchainImage
from binforge.workspace import BuildWorkspace

SCRIPT_NAME = "build.sh"
LOG_NAME = "build.log"
_ATTEMPT_MARKER = ".attempted"

SCRIPT_PREAMBLE = """\
set -e

install_license () {
    if [ "$#" -eq 0 ]; then
        echo "install_license: no license files given" >&2
        return 1
    fi
    mkdir -p "${prefix}/share/licenses/${SRC_NAME}"
    for license_file in "$@"; do
        cp "${license_file}" "${prefix}/share/licenses/${SRC_NAME}/"
        chmod 644 "${prefix}/share/licenses/${SRC_NAME}/$(basename "${license_file}")"
    done
}

mkdir -p "${bindir}" "${libdir}" "${includedir}"
cd "${srcdir}"
"""


class RunState(StrEnum):
    PREPARED = "prepared"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PREPARED: frozenset({RunState.RUNNING, RunState.FAILED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.TIMED_OUT}),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.TIMED_OUT: frozenset(),
}


@dataclass(frozen=True, slots=True)
class MountSpec:
    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True, slots=True)
class RunRequest:
    name: str
    version: str
    script: str
    workspace: BuildWorkspace
    platform: Platform
    toolchain: ToolchainImage
    host_platform: Platform
    nproc: int = 1
    timeout: float | None = None
    cancel_event: threading.Event | None = None
    dependency_env: Mapping[str, str] = field(default_factory=dict)

    @property
    def script_path(self) -> Path:
        return self.workspace.scratch / SCRIPT_NAME

    @property
    def log_path(self) -> Path:
        return self.workspace.scratch / LOG_NAME


class BuildRunner(Protocol):
    name: str

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        """Return the host/sandbox mount mapping for this attempt."""

    def sandbox_path(self, request: RunRequest, path: Path) -> str:
        """Translate a host path inside the workspace into the path the script sees."""

    def prepare(self, request: RunRequest) -> None:
        """Check prerequisites and create runtime resources."""

    def execute(self, request: RunRequest, *, environment: Mapping[str, str]) -> ProcessOutcome:
        """Run the script once and report how it ended."""

    def cleanup(self, request: RunRequest) -> None:
        """Release runtime resources."""


def build_environment(request: RunRequest, *, sandbox_path: Callable[[Path], str]) -> dict[str, str]:
    workspace = request.workspace
    platform = request.platform
    prefix = sandbox_path(workspace.prefix)
    libdir = "bin" if platform.is_windows else "lib"
    path_entries = [
        *request.toolchain.bin_dirs,
        f"{sandbox_path(workspace.host_deps_root)}/bin",
        "/usr/local/bin",
        "/usr/bin",
        "/bin",
    ]
    env = {
        "prefix": prefix,
        "srcdir": sandbox_path(workspace.source_root),
        "WORKSPACE": sandbox_path(workspace.root),
        "bindir": f"{prefix}/bin",
        "libdir": f"{prefix}/{libdir}",
        "includedir": f"{prefix}/include",
        "host_prefix": sandbox_path(workspace.host_deps_root),
        "target_deps_prefix": sandbox_path(workspace.target_deps_root),
        "target": str(platform),
        "MACHTYPE": str(request.host_platform),
        "nproc": str(request.nproc),
        "SRC_NAME": request.name,
        "SRC_VERSION": request.version,
        "HOME": sandbox_path(workspace.scratch),
        "TMPDIR": sandbox_path(workspace.scratch),
        "PATH": os.pathsep.join(path_entries),
        "LC_ALL": "C",
        "SOURCE_DATE_EPOCH": "0",
    }
    env.update(request.toolchain.tool_aliases(platform))
    for key, value in request.dependency_env.items():
        env[key] = sandbox_path(Path(value)) if Path(value).is_relative_to(workspace.root) else value
    return env


def render_script(request: RunRequest) -> Path:
    path = request.script_path
    path.write_text(SCRIPT_PREAMBLE + "\n" + request.script.rstrip("\n") + "\n", encoding="utf-8")
    return path


@dataclass(slots=True)
class RunAttempt:
    request: RunRequest
    state: RunState = RunState.PREPARED
    output: str = ""
    returncode: int | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ValidationError(
                f"Illegal run state transition {self.state} -> {new_state}.",
                context={"platform": str(self.request.platform)},
            )
        self.state = new_state

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def execute(self, runner: BuildRunner, *, logger: StructuredLogger | None = None) -> RunAttempt:
        """Run the script once; raises RunFailed, RunCancelled or RunTimedOut on failure."""
        if self.state is not RunState.PREPARED:
            raise ValidationError("A run attempt executes its script only once.")
        marker = self.request.workspace.scratch / _ATTEMPT_MARKER
        if marker.exists():
            raise ValidationError(
                "This workspace has already run a build script.",
                hint="Create a fresh BuildWorkspace to retry a build.",
                context={"workspace": str(self.request.workspace.root)},
            )
        marker.touch()
        platform = str(self.request.platform)

        try:
            runner.prepare(self.request)
            render_script(self.request)
            environment = build_environment(self.request, sandbox_path=partial(runner.sandbox_path, self.request))
            self.transition(RunState.RUNNING)
            self.started_at = time.monotonic()
            _log(logger, platform, f"Running build script with {runner.name} ({self.request.toolchain.name}).")
            try:
                outcome = runner.execute(self.request, environment=environment)
            finally:
                self.finished_at = time.monotonic()
        except BinforgeError:
            self.state = RunState.FAILED
            raise
        finally:
            runner.cleanup(self.request)

        self.output = outcome.output
        self.returncode = outcome.returncode
        return self._conclude(outcome, logger)

    def _conclude(self, outcome: ProcessOutcome, logger: StructuredLogger | None) -> RunAttempt:
        platform = str(self.request.platform)
        context = {"platform": platform, "log": str(self.request.log_path)}
        if outcome.timed_out:
            self.transition(RunState.TIMED_OUT)
            _log(logger, platform, "Build script timed out.", level="error")
            raise RunTimedOut(
                "Build script exceeded its wall-clock budget.",
                output=outcome.output,
                timeout=self.request.timeout or 0.0,
                context=context,
            )
        if outcome.cancelled:
            self.transition(RunState.FAILED)
            _log(logger, platform, "Build script was cancelled.", level="error")
            raise RunCancelled(
                "Build script was cancelled.",
                output=outcome.output,
                returncode=outcome.returncode,
                context=context,
            )
        if outcome.returncode != 0:
            self.transition(RunState.FAILED)
            detail = (
                f"terminated by signal {-outcome.returncode}"
                if outcome.signalled
                else f"exited with status {outcome.returncode}"
            )
            _log(logger, platform, f"Build script {detail}.", level="error")
            raise RunFailed(
                f"Build script {detail}.",
                output=outcome.output,
                returncode=outcome.returncode,
                hint="Inspect the captured build output.",
                context=context,
            )
        self.transition(RunState.SUCCEEDED)
        _log(logger, platform, "Build script succeeded.")
        return self


def run_attempt(
    runner: BuildRunner,
    request: RunRequest,
    *,
    logger: StructuredLogger | None = None,
) -> RunAttempt:
    return RunAttempt(request=request).execute(runner, logger=logger)


def _log(logger: StructuredLogger | None, platform: str, message: str, *, level: str = "info") -> None:
    if logger is None:
        return
    logger.log(
        operation="run",
        platform=platform,
        phase="run",
        component="runner",
        message=message,
        level=level,
    )


__all__ = [
    "BuildRunner",
    "MountSpec",
    "RunAttempt",
    "RunRequest",
    "RunState",
    "SCRIPT_PREAMBLE",
    "build_environment",
    "render_script",
    "run_attempt",
]
