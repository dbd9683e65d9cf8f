"""Per-attempt build workspace layout."""

from __future__ import annotations

import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from binforge.platforms import Platform


@dataclass(slots=True)
class BuildWorkspace:
    """Directories exclusively owned by one (package, platform) build attempt.

    Layout under ``root``::

        srcdir/          staged sources
        destdir/         installation prefix populated by the build script
        scratch/         temporary files and the generated script
        deps/target/     staged target-scope dependencies
        deps/host/       staged host-scope dependencies
    """

    root: Path
    platform: Platform
    keep: bool = False
    torn_down: bool = False

    @classmethod
    def create(
        cls,
        base_dir: str | Path,
        *,
        name: str,
        platform: Platform,
        keep: bool = False,
    ) -> BuildWorkspace:
        root = Path(base_dir) / f"{name}-{platform}-{uuid.uuid4().hex[:8]}"
        workspace = cls(root=root.resolve(), platform=platform, keep=keep)
        for path in (
            workspace.source_root,
            workspace.prefix,
            workspace.scratch,
            workspace.target_deps_root,
            workspace.host_deps_root,
        ):
            path.mkdir(parents=True, exist_ok=False)
        return workspace

    @property
    def source_root(self) -> Path:
        return self.root / "srcdir"

    @property
    def prefix(self) -> Path:
        return self.root / "destdir"

    @property
    def scratch(self) -> Path:
        return self.root / "scratch"

    @property
    def target_deps_root(self) -> Path:
        return self.root / "deps" / "target"

    @property
    def host_deps_root(self) -> Path:
        return self.root / "deps" / "host"

    def contains(self, path: str | Path) -> bool:
        return Path(path).resolve().is_relative_to(self.root)

    def teardown(self, *, force: bool = False) -> None:
        """Remove the workspace unless it is retained for inspection."""
        if self.torn_down or (self.keep and not force):
            return
        shutil.rmtree(self.root, ignore_errors=True)
        self.torn_down = True

    def __enter__(self) -> BuildWorkspace:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.teardown()
