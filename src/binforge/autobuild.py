"""Build a package for many platforms: stage, resolve, run, locate, audit, package.

Every platform is an independent attempt with its own :class:`BuildWorkspace`.
Attempts run on a thread pool; a failing platform records a
:class:`PlatformFailure` and never aborts its siblings. Arguments are fully
validated before the first workspace is created.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from binforge.audit import AuditReport, audit_prefix
from binforge.dependencies import (
    Dependency,
    DependencyResolver,
    InMemoryCatalog,
    ResolvedDependencies,
)
from binforge.errors import BinforgeError, BuildCrashed, MissingProducts, RunCancelled, ValidationError
from binforge.models import AutobuildResult, BuildOptions, PlatformFailure
from binforge.observability import StructuredLogger
from binforge.packager import PackagedArtifact, package
from binforge.platforms import Platform, host_platform
from binforge.products import FileProduct, Product, locate_products
from binforge.runners import BuildRunner, LocalRunner, RunAttempt, RunRequest, ToolchainRegistry
from binforge.sources import SourceDescriptor, stage, validate_source
from binforge.workspace import BuildWorkspace

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")
_VERSION = re.compile(r"^\d+(?:\.\d+){0,2}$")


@dataclass(frozen=True, slots=True)
class _BuildPlan:
    work_dir: Path
    name: str
    version: str
    sources: tuple[SourceDescriptor, ...]
    script: str
    products: tuple[Product, ...]
    dependencies: tuple[Dependency, ...]
    options: BuildOptions
    runner: BuildRunner
    toolchains: ToolchainRegistry
    resolver: DependencyResolver
    native_platform: Platform
    output_dir: Path
    cache_dir: Path
    logger: StructuredLogger


@dataclass(slots=True)
class _Outcome:
    artifact: PackagedArtifact
    audit: AuditReport | None
    report_path: Path


@dataclass(slots=True)
class _Collector:
    result: AutobuildResult
    lock: threading.Lock = field(default_factory=threading.Lock)

    def success(self, platform: Platform, outcome: _Outcome) -> None:
        with self.lock:
            self.result.artifacts[platform] = outcome.artifact
            self.result.report_paths[platform] = outcome.report_path
            if outcome.audit is not None:
                self.result.audits[platform] = outcome.audit

    def failure(self, failure: PlatformFailure, audit: AuditReport | None) -> None:
        with self.lock:
            self.result.failures[failure.platform] = failure
            if audit is not None:
                self.result.audits[failure.platform] = audit


def autobuild(
    work_dir: str | Path,
    name: str,
    version: str,
    sources: Sequence[SourceDescriptor],
    script: str,
    platforms: Sequence[Platform],
    products: Sequence[Product],
    dependencies: Sequence[Dependency] = (),
    options: BuildOptions | None = None,
) -> AutobuildResult:
    """Build ``name`` for every platform and return the packaged artifacts.

    Raises :class:`ValidationError` before any build starts if the arguments are
    inconsistent. Per-platform failures are reported in ``result.failures``.
    Archives land in ``<work_dir>/products`` unless ``options.output_dir`` is set.
    """
    options = options or BuildOptions()
    platforms = _validate(name, version, sources, script, platforms, products, dependencies)

    root = Path(work_dir).resolve()
    native = options.native_platform or host_platform()
    logger = StructuredLogger()
    plan = _BuildPlan(
        work_dir=root,
        name=name,
        version=version,
        sources=tuple(sources),
        script=script,
        products=tuple(products),
        dependencies=tuple(dependencies),
        options=options,
        runner=options.runner or LocalRunner(),
        toolchains=options.toolchains or ToolchainRegistry.host(native),
        resolver=DependencyResolver(
            catalog=options.catalog or InMemoryCatalog(),
            native_platform=native,
            logger=logger,
        ),
        native_platform=native,
        output_dir=Path(options.output_dir) if options.output_dir else root / "products",
        cache_dir=Path(options.cache_dir) if options.cache_dir else root / "downloads",
        logger=logger,
    )
    (root / "build").mkdir(parents=True, exist_ok=True)

    collector = _Collector(result=AutobuildResult(name=name, version=version, logger=logger))
    with ThreadPoolExecutor(max_workers=options.parallel, thread_name_prefix="binforge") as executor:
        futures = {executor.submit(_build_platform, plan, platform, collector): platform for platform in platforms}
        for future in as_completed(futures):
            future.result()

    result = collector.result
    result.artifacts = dict(sorted(result.artifacts.items(), key=lambda item: str(item[0])))
    result.failures = dict(sorted(result.failures.items(), key=lambda item: str(item[0])))
    return result


def _build_platform(plan: _BuildPlan, platform: Platform, collector: _Collector) -> None:
    triplet = str(platform)
    cancel_event = plan.options.cancel_event
    if cancel_event is not None and cancel_event.is_set():
        collector.failure(
            PlatformFailure(platform, "queued", RunCancelled("Build cancelled before it started.")),
            None,
        )
        return

    workspace = BuildWorkspace.create(
        plan.work_dir / "build",
        name=plan.name,
        platform=platform,
        keep=plan.options.keep_workspace,
    )
    phase = "stage"
    audit: AuditReport | None = None
    try:
        _log(plan, triplet, phase, f"Staging {len(plan.sources)} source(s) into {workspace.root}.")
        for descriptor in plan.sources:
            stage(descriptor, workspace, cache_dir=plan.cache_dir, policy=plan.options.policy)

        phase = "dependencies"
        resolved = plan.resolver.resolve(plan.dependencies, platform, workspace=workspace)

        phase = "run"
        request = RunRequest(
            name=plan.name,
            version=plan.version,
            script=plan.script,
            workspace=workspace,
            platform=platform,
            toolchain=plan.toolchains.select(
                platform,
                preferred_gcc_version=plan.options.preferred_gcc_version,
            ),
            host_platform=plan.native_platform,
            nproc=plan.options.nproc,
            timeout=plan.options.timeout,
            cancel_event=cancel_event,
            dependency_env=resolved.environment(),
        )
        attempt = RunAttempt(request=request).execute(plan.runner, logger=plan.logger)

        phase = "products"
        found, missing = locate_products(plan.products, workspace.prefix, platform)
        if missing:
            raise MissingProducts(
                f"{len(missing)} declared product(s) were not produced.",
                missing=[product.describe() for product in missing],
                hint="Check the build script installs every product into ${prefix}.",
                context={"platform": triplet, "missing": ", ".join(p.describe() for p in missing)},
            )

        phase = "audit"
        if not plan.options.skip_audit:
            audit = audit_prefix(
                workspace.prefix,
                platform,
                policy=plan.options.audit_policy,
                dependencies=resolved,
                build_roots=_build_roots(plan, request, workspace),
                logger=plan.logger,
            )
            audit.raise_for_fatal()

        phase = "package"
        artifact = package(
            workspace.prefix,
            plan.name,
            platform,
            version=plan.version,
            output_dir=plan.output_dir,
        )
        _log(plan, triplet, phase, f"Packaged {artifact.archive_path.name} ({artifact.content_hash}).")
        report_path = _write_report(plan, platform, artifact, found, workspace, resolved, audit, attempt)
    except BinforgeError as exc:
        _log(plan, triplet, phase, str(exc).splitlines()[0], level="error")
        collector.failure(PlatformFailure(platform, phase, exc), audit)
        return
    except Exception as exc:  # noqa: BLE001
        crashed = BuildCrashed(
            f"Unexpected {type(exc).__name__} during the {phase} phase.",
            context={"platform": triplet, "error": repr(exc)},
        )
        crashed.__cause__ = exc
        _log(plan, triplet, phase, str(crashed).splitlines()[0], level="error")
        collector.failure(PlatformFailure(platform, phase, crashed), audit)
        return
    finally:
        workspace.teardown()

    collector.success(platform, _Outcome(artifact=artifact, audit=audit, report_path=report_path))


def _validate(
    name: str,
    version: str,
    sources: Sequence[SourceDescriptor],
    script: str,
    platforms: Sequence[Platform],
    products: Sequence[Product],
    dependencies: Sequence[Dependency],
) -> list[Platform]:
    if not name or not _NAME.fullmatch(name):
        raise ValidationError(
            "Package name must start with a letter or underscore and contain only "
            "letters, digits, `_`, `.` and `-`.",
            context={"name": name},
        )
    if "-" in version or "+" in version:
        raise ValidationError(
            "Version must not carry pre-release or build metadata.",
            hint="Use a plain MAJOR.MINOR.PATCH version such as `1.2.3`.",
            context={"version": version},
        )
    if not _VERSION.fullmatch(version):
        raise ValidationError("Version must look like MAJOR[.MINOR[.PATCH]].", context={"version": version})
    if not isinstance(script, str):
        raise ValidationError("Build script must be a string.")
    if not platforms:
        raise ValidationError("At least one platform is required.")

    unique = list(dict.fromkeys(platforms))
    if any(p.is_any for p in unique) and len(unique) > 1:
        raise ValidationError(
            "The `any` platform cannot be combined with concrete platforms.",
            context={"platforms": ", ".join(str(p) for p in unique)},
        )
    if unique[0].is_any:
        for product in products:
            if not isinstance(product, FileProduct):
                raise ValidationError(
                    f"{type(product).__name__} cannot be built for the `any` platform.",
                    hint="Only FileProduct outputs are platform independent.",
                    context={"product": product.describe()},
                )

    variables = [product.variable for product in products]
    duplicates = sorted({v for v in variables if variables.count(v) > 1})
    if duplicates:
        raise ValidationError("Product variables must be unique.", context={"duplicates": ", ".join(duplicates)})

    for descriptor in sources:
        validate_source(descriptor)
    for dependency in dependencies:
        if not isinstance(dependency, Dependency):
            raise ValidationError(f"Unsupported dependency request: {dependency!r}")
    return unique


def _build_roots(plan: _BuildPlan, request: RunRequest, workspace: BuildWorkspace) -> list[str]:
    runner = plan.runner
    roots = {str(workspace.prefix), str(workspace.target_deps_root)}
    roots.add(runner.sandbox_path(request, workspace.prefix))
    roots.add(runner.sandbox_path(request, workspace.target_deps_root))
    return sorted(roots)


def _write_report(
    plan: _BuildPlan,
    platform: Platform,
    artifact: PackagedArtifact,
    found: dict[Product, Path],
    workspace: BuildWorkspace,
    resolved: ResolvedDependencies,
    audit: AuditReport | None,
    attempt: RunAttempt,
) -> Path:
    payload = {
        "name": plan.name,
        "version": plan.version,
        "platform": str(platform),
        "archive": artifact.archive_path.name,
        "sha256": artifact.content_hash,
        "size": artifact.size,
        "products": {
            product.variable: path.relative_to(workspace.prefix).as_posix() for product, path in found.items()
        },
        "dependencies": resolved.to_dict(),
        "audit": audit.to_dict() if audit is not None else None,
        "run": {
            "toolchain": attempt.request.toolchain.name,
            "state": attempt.state.value,
            "returncode": attempt.returncode,
        },
        "log": plan.logger.records_for_platform(str(platform)),
    }
    report_path = artifact.archive_path.with_name(artifact.archive_path.name + ".report.json")
    report_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return report_path


def _log(plan: _BuildPlan, platform: str, phase: str, message: str, *, level: str = "info") -> None:
    plan.logger.log(
        operation="autobuild",
        platform=platform,
        phase=phase,
        component="orchestrator",
        message=message,
        level=level,
    )


__all__ = ["autobuild"]
