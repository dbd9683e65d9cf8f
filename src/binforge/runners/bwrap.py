"""Run build scripts inside a bubblewrap sandbox rooted at the toolchain image.

The image rootfs is mounted read-only as ``/`` and the attempt's workspace is
the only writable host directory, mounted at ``/workspace``. Namespaces are
unshared so the script cannot see other attempts or the network. The rootfs
must provide an empty `/workspace` mount point.
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from binforge.errors import RunFailed, ValidationError
from binforge.runners.base import MountSpec, RunRequest
from binforge.runners.process import ProcessOutcome, supervise

SANDBOX_WORKSPACE = "/workspace"


@dataclass(slots=True)
class BubblewrapRunner:
    name: str = "bubblewrap"
    executable: str = "bwrap"
    shell: str = "/bin/bash"
    share_network: bool = False
    poll_interval: float = 0.1

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        rootfs = request.toolchain.rootfs
        if rootfs is None:
            raise RunFailed(
                "Toolchain image has no rootfs to sandbox into.",
                context={"toolchain": request.toolchain.name},
            )
        return (
            MountSpec(source=rootfs, target="/", read_only=True),
            MountSpec(source=request.workspace.root, target=SANDBOX_WORKSPACE),
        )

    def sandbox_path(self, request: RunRequest, path: Path) -> str:
        root = request.workspace.root
        if not Path(path).is_relative_to(root):
            raise ValidationError(
                "Only workspace paths are visible inside the sandbox.",
                context={"path": str(path), "workspace": str(root)},
            )
        relative = Path(path).relative_to(root).as_posix()
        return SANDBOX_WORKSPACE if relative == "." else f"{SANDBOX_WORKSPACE}/{relative}"

    def prepare(self, request: RunRequest) -> None:
        if shutil.which(self.executable) is None:
            raise RunFailed(
                "bubblewrap is not installed.",
                hint="Install bubblewrap or use LocalRunner.",
                context={"runner": self.name, "executable": self.executable},
            )
        for mount in self.mount_plan(request):
            if not mount.source.is_dir():
                raise RunFailed(
                    "Sandbox mount source does not exist.",
                    context={"source": str(mount.source), "target": mount.target},
                )
        rootfs = request.toolchain.rootfs
        if rootfs is not None and not (rootfs / SANDBOX_WORKSPACE.lstrip("/")).is_dir():
            raise RunFailed(
                "Toolchain rootfs lacks the workspace mount point.",
                context={"rootfs": str(rootfs), "mount_point": SANDBOX_WORKSPACE},
            )

    def command(self, request: RunRequest) -> list[str]:
        argv = [self.executable, "--unshare-all", "--die-with-parent"]
        if self.share_network:
            argv.append("--share-net")
        for mount in self.mount_plan(request):
            flag = "--ro-bind" if mount.read_only else "--bind"
            argv.extend([flag, str(mount.source), mount.target])
        argv.extend(["--dev", "/dev", "--proc", "/proc", "--tmpfs", "/tmp"])
        argv.extend(["--chdir", self.sandbox_path(request, request.workspace.source_root)])
        argv.extend([self.shell, self.sandbox_path(request, request.script_path)])
        return argv

    def execute(self, request: RunRequest, *, environment: Mapping[str, str]) -> ProcessOutcome:
        return supervise(
            self.command(request),
            cwd=request.workspace.root,
            env=environment,
            log_path=request.log_path,
            timeout=request.timeout,
            cancel_event=request.cancel_event,
            poll_interval=self.poll_interval,
        )

    def cleanup(self, request: RunRequest) -> None:
        pass
