"""Source descriptors and staging into a build workspace.

Every descriptor lands at a deterministic location under ``srcdir/`` so that
build scripts can address it by convention:

* :class:`DirectorySource` copies the directory *contents* to ``srcdir/<target>``.
* :class:`ArchiveSource` extracts to ``srcdir/<unpack_target>``.
* :class:`GitSource` checks out to ``srcdir/<unpack_target or repo name>``.
* :class:`FileSource` copies to ``srcdir/<filename or URL basename>``.
"""

from __future__ import annotations

import gzip
import os
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from binforge.errors import IntegrityMismatch, ValidationError
from binforge.fetch import fetch, fetch_git, sha256_file
from binforge.policy import Policy
from binforge.workspace import BuildWorkspace

_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")


@dataclass(frozen=True, slots=True)
class DirectorySource:
    path: str | Path
    target: str = ""
    follow_symlinks: bool = False


@dataclass(frozen=True, slots=True)
class ArchiveSource:
    url: str
    sha256: str
    unpack_target: str = ""


@dataclass(frozen=True, slots=True)
class GitSource:
    url: str
    revision: str
    unpack_target: str = ""


@dataclass(frozen=True, slots=True)
class FileSource:
    url: str
    sha256: str
    filename: str = ""


SourceDescriptor = DirectorySource | ArchiveSource | GitSource | FileSource


@dataclass(frozen=True, slots=True)
class StagedSource:
    descriptor: SourceDescriptor
    path: Path
    digest: str | None = None


def stage(
    descriptor: SourceDescriptor,
    workspace: BuildWorkspace,
    *,
    cache_dir: str | Path | None = None,
    policy: Policy | None = None,
) -> StagedSource:
    """Fetch, verify and place ``descriptor`` under the workspace source root."""
    cache = Path(cache_dir) if cache_dir is not None else workspace.scratch / "downloads"
    if isinstance(descriptor, DirectorySource):
        return _stage_directory(descriptor, workspace)
    if isinstance(descriptor, ArchiveSource):
        return _stage_archive(descriptor, workspace, cache=cache, policy=policy)
    if isinstance(descriptor, GitSource):
        return _stage_git(descriptor, workspace, cache=cache, policy=policy)
    if isinstance(descriptor, FileSource):
        return _stage_file(descriptor, workspace, cache=cache, policy=policy)
    raise ValidationError(f"Unsupported source descriptor: {type(descriptor).__name__}")


def validate_source(descriptor: SourceDescriptor) -> None:
    """Reject descriptors that cannot be verified after fetch."""
    if isinstance(descriptor, (ArchiveSource, FileSource)) and not descriptor.sha256:
        raise ValidationError(
            "Remote sources require a sha256 content hash.",
            context={"url": descriptor.url},
        )
    if isinstance(descriptor, GitSource) and not descriptor.revision:
        raise ValidationError(
            "Git sources require a pinned revision.",
            context={"url": descriptor.url},
        )
    for relative in _relative_targets(descriptor):
        _safe_relative(relative)


def _stage_directory(descriptor: DirectorySource, workspace: BuildWorkspace) -> StagedSource:
    source = Path(descriptor.path)
    if not source.is_dir():
        raise ValidationError(
            "Directory source does not exist.",
            context={"path": str(source)},
        )
    destination = workspace.source_root / _safe_relative(descriptor.target)
    shutil.copytree(
        source,
        destination,
        symlinks=not descriptor.follow_symlinks,
        dirs_exist_ok=True,
    )
    return StagedSource(descriptor=descriptor, path=destination)


def _stage_archive(
    descriptor: ArchiveSource,
    workspace: BuildWorkspace,
    *,
    cache: Path,
    policy: Policy | None,
) -> StagedSource:
    downloaded = fetch(descriptor.url, sha256=descriptor.sha256, cache_dir=cache, policy=policy)
    destination = workspace.source_root / _safe_relative(descriptor.unpack_target)
    name = _url_basename(descriptor.url)

    # Extract into scratch first so a corrupt archive leaves nothing in srcdir.
    staging = Path(tempfile.mkdtemp(prefix="extract-", dir=str(workspace.scratch)))
    try:
        try:
            if name.endswith(_TAR_SUFFIXES):
                with tarfile.open(downloaded, "r:*") as archive:
                    archive.extractall(staging, filter="data")
            elif name.endswith(".zip"):
                with zipfile.ZipFile(downloaded) as archive:
                    _extract_zip(archive, staging)
            else:
                raise ValidationError(
                    "Unrecognized archive format.",
                    hint="Use FileSource for files that should not be extracted.",
                    context={"url": descriptor.url},
                )
        except (tarfile.TarError, zipfile.BadZipFile, gzip.BadGzipFile, EOFError) as exc:
            raise IntegrityMismatch(
                "Archive is corrupt and cannot be extracted.",
                context={"url": descriptor.url, "error": str(exc)},
            ) from exc
        destination.mkdir(parents=True, exist_ok=True)
        for entry in sorted(staging.iterdir()):
            shutil.move(str(entry), destination / entry.name)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    return StagedSource(descriptor=descriptor, path=destination, digest=descriptor.sha256.lower())


def _stage_git(
    descriptor: GitSource,
    workspace: BuildWorkspace,
    *,
    cache: Path,
    policy: Policy | None,
) -> StagedSource:
    result = fetch_git(
        descriptor.url,
        revision=descriptor.revision,
        cache_dir=cache / "git",
        policy=policy,
    )
    target = descriptor.unpack_target or _repo_name(descriptor.url)
    destination = workspace.source_root / _safe_relative(target)
    shutil.copytree(
        result.path,
        destination,
        symlinks=True,
        ignore=shutil.ignore_patterns(".git"),
        dirs_exist_ok=True,
    )
    return StagedSource(descriptor=descriptor, path=destination, digest=result.commit)


def _stage_file(
    descriptor: FileSource,
    workspace: BuildWorkspace,
    *,
    cache: Path,
    policy: Policy | None,
) -> StagedSource:
    downloaded = fetch(descriptor.url, sha256=descriptor.sha256, cache_dir=cache, policy=policy)
    destination = workspace.source_root / _safe_relative(
        descriptor.filename or _url_basename(descriptor.url)
    )
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(downloaded, destination)
    return StagedSource(descriptor=descriptor, path=destination, digest=sha256_file(destination))


def _extract_zip(archive: zipfile.ZipFile, destination: Path) -> None:
    for member in archive.infolist():
        _safe_relative(member.filename)
        extracted = Path(archive.extract(member, destination))
        mode = (member.external_attr >> 16) & 0o777
        if mode and not member.is_dir():
            os.chmod(extracted, mode)


def _relative_targets(descriptor: SourceDescriptor) -> tuple[str, ...]:
    if isinstance(descriptor, DirectorySource):
        return (descriptor.target,)
    if isinstance(descriptor, (ArchiveSource, GitSource)):
        return (descriptor.unpack_target,)
    return (descriptor.filename,)


def _safe_relative(relative: str) -> str:
    path = PurePosixPath(relative)
    if path.is_absolute() or ".." in path.parts:
        raise ValidationError(
            "Source targets must be relative paths inside the source root.",
            context={"target": relative},
        )
    return str(path) if relative else ""


def _url_basename(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path if parsed.scheme else url
    name = PurePosixPath(path).name
    if not name:
        raise ValidationError("Cannot derive a file name from the source URL.", context={"url": url})
    return name


def _repo_name(url: str) -> str:
    name = _url_basename(url.rstrip("/"))
    return name[: -len(".git")] if name.endswith(".git") else name


__all__ = [
    "ArchiveSource",
    "DirectorySource",
    "FileSource",
    "GitSource",
    "SourceDescriptor",
    "StagedSource",
    "stage",
    "validate_source",
]
