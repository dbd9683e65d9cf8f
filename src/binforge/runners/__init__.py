"""Build-script runners and toolchain selection."""

from .base import (
    BuildRunner,
    MountSpec,
    RunAttempt,
    RunRequest,
    RunState,
    build_environment,
    run_attempt,
)
from .bwrap import BubblewrapRunner
from .inprocess import InProcessContext, InProcessRunner
from .local import LocalRunner
from .process import ProcessOutcome
from .toolchain import ToolchainImage, ToolchainRegistry

__all__ = [
    "BubblewrapRunner",
    "BuildRunner",
    "InProcessContext",
    "InProcessRunner",
    "LocalRunner",
    "MountSpec",
    "ProcessOutcome",
    "RunAttempt",
    "RunRequest",
    "RunState",
    "ToolchainImage",
    "ToolchainRegistry",
    "build_environment",
    "run_attempt",
]
