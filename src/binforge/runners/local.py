"""Run build scripts directly on the host with a scrubbed environment.

No filesystem isolation is applied; the script only learns about its own
workspace through the environment. Use :class:`BubblewrapRunner` where sibling
workspaces must be invisible.
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from binforge.errors import RunFailed
from binforge.runners.base import MountSpec, RunRequest
from binforge.runners.process import ProcessOutcome, supervise


@dataclass(slots=True)
class LocalRunner:
    name: str = "local"
    shell: str = "bash"
    poll_interval: float = 0.1

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        root = request.workspace.root
        return (MountSpec(source=root, target=str(root)),)

    def sandbox_path(self, request: RunRequest, path: Path) -> str:
        return str(path)

    def prepare(self, request: RunRequest) -> None:
        if shutil.which(self.shell) is None:
            raise RunFailed(
                "Build shell is not available.",
                hint=f"Install `{self.shell}` or choose another runner.",
                context={"runner": self.name, "shell": self.shell},
            )

    def execute(self, request: RunRequest, *, environment: Mapping[str, str]) -> ProcessOutcome:
        return supervise(
            [self.shell, str(request.script_path)],
            cwd=request.workspace.source_root,
            env=environment,
            log_path=request.log_path,
            timeout=request.timeout,
            cancel_event=request.cancel_event,
            poll_interval=self.poll_interval,
        )

    def cleanup(self, request: RunRequest) -> None:
        pass
