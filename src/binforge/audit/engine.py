"""Audit a populated prefix before it is packaged.

The audit inspects every binary under the prefix (detected by signature) and:

1. extracts the libraries each binary needs at load time;
2. flags linkage outside the package's own output, its declared dependencies
   and the platform's base-system allow-list (``disallowed-linkage``);
3. checks the binary's machine and runtime-support ABI against the platform
   (``abi-mismatch``);
4. rewrites search paths relative to the binary's own location so the tree is
   relocatable (``unrelocatable`` when that fails);
5. warns when no license was installed (``missing-license``).

Absolute symlinks into the prefix are made relative along the way.
"""

from __future__ import annotations

import os
import warnings
from collections.abc import Iterable, Sequence
from pathlib import Path, PurePosixPath

from binforge.audit.findings import AuditReport, AuditWarning, Severity
from binforge.audit.formats import (
    BinaryFormat,
    BinaryFormatError,
    BinaryInfo,
    RewriteError,
    default_formats,
    detect_format,
)
from binforge.audit.policy import AuditPolicy, RuntimeSupportRule
from binforge.dependencies import ResolvedDependencies
from binforge.observability import StructuredLogger
from binforge.packager import collect_files
from binforge.platforms import Platform

LICENSE_DIR = "share/licenses"
_ORIGIN_TOKENS = ("$ORIGIN", "${ORIGIN}", "@loader_path", "@executable_path")


def audit_prefix(
    prefix: str | Path,
    platform: Platform,
    *,
    policy: AuditPolicy | None = None,
    dependencies: ResolvedDependencies | None = None,
    build_roots: Iterable[str] = (),
    formats: tuple[BinaryFormat, ...] | None = None,
    logger: StructuredLogger | None = None,
) -> AuditReport:
    """Audit ``prefix`` for ``platform``, rewriting binaries in place.

    ``build_roots`` lists absolute paths that denoted the prefix (or the staged
    dependency prefix) while the build ran; search paths and symlinks under
    them are translated to prefix-relative form.
    """
    root = Path(prefix).resolve()
    policy = policy or AuditPolicy()
    dependencies = dependencies or ResolvedDependencies()
    formats = formats or default_formats()
    roots = _normalize_roots([str(root), str(Path(prefix)), *build_roots])
    report = AuditReport(platform=str(platform))

    _repair_symlinks(root, roots, report)

    if not platform.is_any:
        own = _library_index((path.relative_to(root).as_posix() for path in collect_files(root)), platform)
        deps = _library_index((name for a in dependencies.target for name in a.files), platform)
        declared = {artifact.name for artifact in dependencies.target}
        for path in collect_files(root):
            if path.is_symlink():
                continue
            binary_format = detect_format(path, formats)
            if binary_format is None:
                continue
            subject = path.relative_to(root).as_posix()
            try:
                info = binary_format.inspect(path)
            except BinaryFormatError as exc:
                report.add(Severity.WARNING, "unreadable-binary", subject, str(exc))
                continue
            _check_machine(info, platform, subject, report)
            if not info.linkable:
                continue
            located = _check_linkage(info, platform, policy, own, deps, declared, subject, report)
            _relocate(info, binary_format, root, roots, located, subject, report)

    if policy.require_license and not _has_license(root):
        report.add(
            Severity.WARNING,
            "missing-license",
            LICENSE_DIR,
            "No license file installed; call `install_license` in the build script.",
        )

    for finding in report.findings:
        if finding.severity is Severity.WARNING:
            warnings.warn(
                f"[{platform}] {finding.category}: {finding.subject}: {finding.message}",
                AuditWarning,
                stacklevel=2,
            )
        if logger is not None:
            logger.log(
                operation="audit",
                platform=str(platform),
                phase="audit",
                component=finding.category,
                message=f"{finding.subject}: {finding.message}",
                level=finding.severity.value,
            )
    return report


def _check_machine(info: BinaryInfo, platform: Platform, subject: str, report: AuditReport) -> None:
    expected = _arch_family(platform.arch)
    if info.machine is not None and info.machine != expected:
        report.add(
            Severity.FATAL,
            "abi-mismatch",
            subject,
            f"Binary targets {info.machine} but the platform is {platform.arch}.",
        )


def _check_linkage(
    info: BinaryInfo,
    platform: Platform,
    policy: AuditPolicy,
    own: dict[str, str],
    deps: dict[str, str],
    declared: set[str],
    subject: str,
    report: AuditReport,
) -> dict[str, str]:
    """Classify every needed library; returns ``{needed: prefix-relative dir}`` for located ones."""
    located: dict[str, str] = {}
    for library in info.needed:
        rule = policy.rule_for(library)
        if rule is not None:
            _check_runtime_support(info, rule, library, platform, declared, subject, report)
            continue
        if policy.is_allowed(library, platform):
            continue
        key = _library_key(library, platform)
        if key in own:
            located[library] = own[key]
        elif key in deps:
            located[library] = deps[key]
        else:
            report.add(
                Severity.FATAL,
                "disallowed-linkage",
                subject,
                f"Links `{library}`, which is neither built here, declared as a dependency, "
                "nor part of the base system.",
            )
    return located


def _check_runtime_support(
    info: BinaryInfo,
    rule: RuntimeSupportRule,
    library: str,
    platform: Platform,
    declared: set[str],
    subject: str,
    report: AuditReport,
) -> None:
    if rule.provider is not None and rule.provider not in declared:
        report.add(
            Severity.WARNING,
            "missing-runtime-dependency",
            subject,
            f"Links `{library}`; declare `{rule.provider}` as a dependency.",
        )
    observed = rule.observed_value(library, info.symbols)
    expected = getattr(platform, rule.axis)
    if observed is None:
        return
    if expected is None:
        report.add(
            Severity.WARNING,
            "abi-unconstrained",
            subject,
            f"Uses {rule.axis}={observed} but the platform does not pin {rule.axis}; "
            "expand the platform list over this axis.",
        )
    elif observed != expected:
        report.add(
            Severity.FATAL,
            "abi-mismatch",
            subject,
            f"Uses {rule.axis}={observed} but the platform requires {rule.axis}={expected}.",
        )


def _relocate(
    info: BinaryInfo,
    binary_format: BinaryFormat,
    root: Path,
    roots: Sequence[str],
    located: dict[str, str],
    subject: str,
    report: AuditReport,
) -> None:
    token = binary_format.origin_token
    if not token:
        return
    binary_dir = info.path.parent.relative_to(root).as_posix()
    rpaths: list[str] = []
    for entry in info.rpaths:
        if entry.startswith(_ORIGIN_TOKENS):
            rpaths.append(entry)
            continue
        relative = _under_roots(entry, roots)
        if relative is None:
            report.add(Severity.INFO, "dropped-rpath", subject, f"Dropped search path `{entry}`.")
            continue
        rpaths.append(_origin_relative(token, binary_dir, relative))
    for directory in located.values():
        rpaths.append(_origin_relative(token, binary_dir, directory))
    rpaths = list(dict.fromkeys(rpaths))

    renames = {
        library: f"@rpath/{PurePosixPath(library).name}"
        for library in located
        if token == "@loader_path" and _under_roots(library, roots) is not None
    }
    install_id = None
    if token == "@loader_path" and info.soname and _under_roots(info.soname, roots) is not None:
        install_id = f"@rpath/{PurePosixPath(info.soname).name}"
    if tuple(rpaths) == info.rpaths and not renames and install_id is None:
        return
    try:
        binary_format.rewrite_search_paths(info.path, rpaths=rpaths, renames=renames, install_id=install_id)
    except (RewriteError, BinaryFormatError, OSError) as exc:
        report.add(Severity.FATAL, "unrelocatable", subject, f"Cannot rewrite search paths: {exc}")
        return
    report.add(Severity.INFO, "relocated", subject, f"Search paths set to `{':'.join(rpaths)}`.")
    if install_id is not None:
        report.add(Severity.INFO, "relocated", subject, f"Install name `{info.soname}` set to `{install_id}`.")


def _repair_symlinks(root: Path, roots: Sequence[str], report: AuditReport) -> None:
    for path in collect_files(root):
        if not path.is_symlink():
            continue
        target = os.readlink(path)
        if not os.path.isabs(target):
            continue
        subject = path.relative_to(root).as_posix()
        relative = _under_roots(target, roots)
        if relative is None:
            report.add(
                Severity.WARNING,
                "absolute-symlink",
                subject,
                f"Symlink points outside the prefix to `{target}`.",
            )
            continue
        new_target = os.path.relpath(root / relative, path.parent)
        path.unlink()
        path.symlink_to(new_target)
        report.add(Severity.INFO, "absolute-symlink", subject, f"Rewrote `{target}` as `{new_target}`.")


def _library_index(relative_paths: Iterable[str], platform: Platform) -> dict[str, str]:
    index: dict[str, str] = {}
    for relative in sorted(relative_paths):
        path = PurePosixPath(relative)
        index.setdefault(_library_key(path.name, platform), path.parent.as_posix())
    return index


def _library_key(library: str, platform: Platform) -> str:
    name = PurePosixPath(library.replace("\\", "/")).name
    return name.lower() if platform.is_windows else name


def _under_roots(path: str, roots: Sequence[str]) -> str | None:
    """Return ``path`` relative to the first build root containing it."""
    for root in roots:
        if path == root:
            return "."
        if path.startswith(root + "/"):
            return path[len(root) + 1 :]
    return None


def _origin_relative(token: str, binary_dir: str, target_dir: str) -> str:
    relative = os.path.relpath(target_dir, binary_dir)
    return token if relative == "." else f"{token}/{relative}"


def _normalize_roots(roots: Iterable[str]) -> list[str]:
    cleaned = [root.rstrip("/") for root in roots if root and root != "/"]
    # Longest first so nested roots win.
    return sorted(dict.fromkeys(cleaned), key=len, reverse=True)


def _arch_family(arch: str) -> str:
    return "arm" if arch in ("armv6l", "armv7l") else arch


def _has_license(root: Path) -> bool:
    licenses = root / LICENSE_DIR
    return licenses.is_dir() and any(path.is_file() for path in licenses.rglob("*"))


__all__ = ["LICENSE_DIR", "audit_prefix"]
