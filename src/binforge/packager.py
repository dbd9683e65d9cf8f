"""Deterministic archive creation, verification and installation."""

from __future__ import annotations

import gzip
import os
import stat
import tarfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from binforge.errors import HashMismatch, ValidationError
from binforge.fetch import sha256_file
from binforge.platforms import Platform

_DIR_MODE = 0o755
_EXEC_MODE = 0o755
_FILE_MODE = 0o644


@dataclass(frozen=True, slots=True)
class PackagedArtifact:
    platform: Platform
    archive_path: Path
    content_hash: str
    size: int


def archive_filename(name: str, version: str, platform: Platform) -> str:
    return f"{name}.v{version}.{platform}.tar.gz"


def collect_files(prefix: str | Path) -> list[Path]:
    """Every file and symlink under ``prefix``, sorted by relative POSIX path."""
    root = Path(prefix)
    files = [
        path
        for path in root.rglob("*")
        if path.is_symlink() or path.is_file()
    ]
    return sorted(files, key=lambda path: path.relative_to(root).as_posix())


def collapse_symlinks(files: Iterable[Path]) -> list[Path]:
    """Drop symlinks whose target is also in ``files``."""
    paths = list(files)
    real = {path.resolve() for path in paths if not path.is_symlink()}
    return [path for path in paths if not (path.is_symlink() and path.resolve() in real)]


def package(
    prefix: str | Path,
    name: str,
    platform: Platform,
    *,
    version: str,
    output_dir: str | Path,
) -> PackagedArtifact:
    """Archive ``prefix`` so byte-identical trees give byte-identical archives.

    Entries are sorted, owners/timestamps are zeroed, permissions are normalized
    to 0755/0644, and the gzip header carries neither name nor mtime.
    """
    root = Path(prefix)
    if not root.is_dir():
        raise ValidationError("Cannot package a missing prefix.", context={"prefix": str(root)})
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    archive_path = out_dir / archive_filename(name, version, platform)
    temp_path = archive_path.with_name(archive_path.name + ".tmp")

    try:
        with open(temp_path, "wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0, compresslevel=9) as zipped:
                with tarfile.open(fileobj=zipped, mode="w", format=tarfile.PAX_FORMAT) as archive:
                    for path in _walk(root):
                        info = _normalized_info(archive, path, root)
                        if info.isreg():
                            with open(path, "rb") as handle:
                                archive.addfile(info, handle)
                        else:
                            archive.addfile(info)
        os.replace(temp_path, archive_path)
    finally:
        temp_path.unlink(missing_ok=True)

    return PackagedArtifact(
        platform=platform,
        archive_path=archive_path,
        content_hash=sha256_file(archive_path),
        size=archive_path.stat().st_size,
    )


def verify(archive_path: str | Path, expected_hash: str) -> bool:
    return sha256_file(archive_path) == expected_hash.lower()


def install(archive_path: str | Path, expected_hash: str, dest_prefix: str | Path) -> Path:
    """Extract ``archive_path`` into ``dest_prefix`` after verifying its digest."""
    archive_path = Path(archive_path)
    actual = sha256_file(archive_path)
    if actual != expected_hash.lower():
        raise HashMismatch(
            "Archive hash does not match the expected hash.",
            hint="Refuse to install untrusted content; re-download or re-package.",
            context={
                "archive": str(archive_path),
                "expected": expected_hash,
                "actual": actual,
            },
        )
    destination = Path(dest_prefix)
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "r:gz") as archive:
        archive.extractall(destination, filter="data")
    return destination


def list_archive_files(archive_path: str | Path) -> list[str]:
    with tarfile.open(archive_path, "r:*") as archive:
        return [member.name for member in archive.getmembers() if not member.isdir()]


def _walk(root: Path) -> list[Path]:
    entries = [path for path in root.rglob("*")]
    return sorted(entries, key=lambda path: path.relative_to(root).as_posix())


def _normalized_info(archive: tarfile.TarFile, path: Path, root: Path) -> tarfile.TarInfo:
    arcname = path.relative_to(root).as_posix()
    info = archive.gettarinfo(str(path), arcname=arcname)
    if info is None:
        raise ValidationError(
            "Cannot package a special file; only regular files, directories and symlinks are allowed.",
            hint="Remove sockets and FIFOs from ${prefix} before the build script exits.",
            context={"path": arcname},
        )
    if info.ischr() or info.isblk() or info.isfifo():
        raise ValidationError("Cannot package a device node or FIFO.", context={"path": arcname})
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.pax_headers = {}
    if info.isdir():
        info.mode = _DIR_MODE
    elif info.issym():
        info.mode = 0o777
    else:
        executable = bool(path.lstat().st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
        info.mode = _EXEC_MODE if executable else _FILE_MODE
    return info


__all__ = [
    "PackagedArtifact",
    "archive_filename",
    "collapse_symlinks",
    "collect_files",
    "install",
    "list_archive_files",
    "package",
    "verify",
]
