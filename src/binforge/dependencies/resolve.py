"""Resolve dependency requests against a catalog and stage their artifacts."""

from __future__ import annotations

import warnings
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from binforge.dependencies.catalog import ArtifactSet, Dependency, DependencyCatalog, Scope
from binforge.errors import BinforgeError, FetchFailed, HashMismatch, UnsatisfiedDependencies
from binforge.observability import StructuredLogger
from binforge.packager import install, list_archive_files, verify
from binforge.platforms import Platform
from binforge.workspace import BuildWorkspace


class UnresolvedDependencyWarning(UserWarning):
    """One dependency request could not be satisfied."""


@dataclass(frozen=True, slots=True)
class StagedArtifact:
    name: str
    scope: Scope
    platform: Platform
    root: Path
    sha256: str
    files: tuple[str, ...]
    products: dict[str, Path] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ResolvedDependencies:
    target: tuple[StagedArtifact, ...] = ()
    host: tuple[StagedArtifact, ...] = ()

    def environment(self) -> dict[str, str]:
        """Path hints for located dependency products, keyed ``DEP_``/``HOST_`` + variable."""
        env: dict[str, str] = {}
        for prefix, artifacts in (("DEP_", self.target), ("HOST_", self.host)):
            for artifact in artifacts:
                for variable, path in sorted(artifact.products.items()):
                    env[f"{prefix}{variable.upper()}"] = str(path)
        return env

    def provided_files(self) -> frozenset[str]:
        """Base names of every file installed by a target-scope dependency."""
        return frozenset(
            PurePosixPath(name).name for artifact in self.target for name in artifact.files
        )

    def to_dict(self) -> dict[str, object]:
        return {
            scope: [
                {
                    "name": artifact.name,
                    "platform": str(artifact.platform),
                    "sha256": artifact.sha256,
                    "products": sorted(artifact.products),
                }
                for artifact in artifacts
            ]
            for scope, artifacts in (("target", self.target), ("host", self.host))
        }


@dataclass(frozen=True, slots=True)
class DependencyResolver:
    catalog: DependencyCatalog
    native_platform: Platform
    logger: StructuredLogger | None = None

    def resolve(
        self,
        requests: Iterable[Dependency],
        target_platform: Platform,
        *,
        workspace: BuildWorkspace,
    ) -> ResolvedDependencies:
        """Stage every request, then fail once listing all unsatisfied requests."""
        staged: dict[Scope, list[StagedArtifact]] = {"target": [], "host": []}
        problems: list[tuple[Dependency, str]] = []
        seen: set[Dependency] = set()
        claimed: dict[Scope, dict[str, str]] = {"target": {}, "host": {}}

        for request in requests:
            if request in seen:
                continue
            seen.add(request)
            platform = target_platform if request.scope == "target" else self.native_platform
            root = workspace.target_deps_root if request.scope == "target" else workspace.host_deps_root
            try:
                reason, artifact_set = self._choose(request, platform)
                if artifact_set is None:
                    problems.append((request, reason))
                    continue
                files = _checked_listing(artifact_set)
                conflict = _find_conflict(files, claimed[request.scope])
                if conflict is not None:
                    problems.append((request, conflict))
                    continue
                artifact = _stage(request, artifact_set, root, files)
            except BinforgeError as exc:
                problems.append((request, str(exc).splitlines()[0]))
                continue
            for name in artifact.files:
                claimed[request.scope][name] = request.name
            staged[request.scope].append(artifact)
            self._log(target_platform, f"Staged {request.scope} dependency {request.name} ({artifact.platform}).")

        for request, reason in problems:
            warnings.warn(
                f"Dependency `{request.name}` ({request.scope}) could not be resolved: {reason}",
                UnresolvedDependencyWarning,
                stacklevel=2,
            )
            self._log(target_platform, f"Unresolved dependency {request.name}: {reason}", level="warning")

        if problems:
            names = [request.name for request, _ in problems]
            raise UnsatisfiedDependencies(
                f"Unsatisfied dependencies: {', '.join(names)}.",
                missing=names,
                hint="Check the package names against the catalog and their available platforms.",
                context={
                    "platform": str(target_platform),
                    "details": "; ".join(f"{r.name}: {reason}" for r, reason in problems),
                },
            )
        return ResolvedDependencies(target=tuple(staged["target"]), host=tuple(staged["host"]))

    def _choose(self, request: Dependency, platform: Platform) -> tuple[str, ArtifactSet | None]:
        provider = self.catalog.lookup(request.name)
        if provider is None:
            return "unknown package", None
        artifact_set = provider.artifacts_for(platform)
        if artifact_set is not None:
            return "", artifact_set
        if request.scope == "host":
            return f"no artifacts executable on the native platform {self.native_platform}", None
        available = ", ".join(sorted(str(p) for p in provider.platforms())) or "none"
        return f"no artifacts for {platform} (available: {available})", None

    def _log(self, platform: Platform, message: str, *, level: str = "info") -> None:
        if self.logger is None:
            return
        self.logger.log(
            operation="resolve",
            platform=str(platform),
            phase="dependencies",
            component="resolver",
            message=message,
            level=level,
        )


def _checked_listing(artifact_set: ArtifactSet) -> tuple[str, ...]:
    archive = artifact_set.archive
    if not archive.is_file():
        raise FetchFailed("Dependency archive is missing.", context={"archive": str(archive)})
    if not verify(archive, artifact_set.sha256):
        raise HashMismatch(
            "Dependency archive does not match its catalog hash.",
            context={"archive": str(archive), "expected": artifact_set.sha256},
        )
    return tuple(list_archive_files(archive))


def _find_conflict(files: tuple[str, ...], claimed: dict[str, str]) -> str | None:
    for name in files:
        owner = claimed.get(name)
        if owner is not None:
            return f"file `{name}` is already provided by `{owner}`"
    return None


def _stage(
    request: Dependency,
    artifact_set: ArtifactSet,
    root: Path,
    files: tuple[str, ...],
) -> StagedArtifact:
    install(artifact_set.archive, artifact_set.sha256, root)
    located: dict[str, Path] = {}
    for product in artifact_set.products:
        if artifact_set.platform.is_any and not product.platform_independent:
            continue
        path = product.locate(root, artifact_set.platform)
        if path is not None:
            located[product.variable] = path
    return StagedArtifact(
        name=request.name,
        scope=request.scope,
        platform=artifact_set.platform,
        root=root,
        sha256=artifact_set.sha256,
        files=files,
        products=located,
    )


__all__ = [
    "DependencyResolver",
    "ResolvedDependencies",
    "StagedArtifact",
    "UnresolvedDependencyWarning",
]
