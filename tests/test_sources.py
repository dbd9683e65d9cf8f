import hashlib
import io
import os
import subprocess
import tarfile
import zipfile
from pathlib import Path

import pytest

from binforge.errors import IntegrityMismatch, PolicyError, ValidationError
from binforge.policy import Policy
from binforge.sources import ArchiveSource, DirectorySource, FileSource, GitSource, stage, validate_source
from binforge.workspace import BuildWorkspace


def test_directory_source_copies_contents_and_permissions(tmp_path: Path, workspace: BuildWorkspace) -> None:
    source = tmp_path / "bundled"
    (source / "scripts").mkdir(parents=True)
    script = source / "scripts" / "configure"
    script.write_text("#!/bin/sh\n", encoding="utf-8")
    script.chmod(0o755)

    staged = stage(DirectorySource(source, target="bundled"), workspace)

    copied = workspace.source_root / "bundled" / "scripts" / "configure"
    assert staged.path == workspace.source_root / "bundled"
    assert copied.read_text(encoding="utf-8") == "#!/bin/sh\n"
    assert os.access(copied, os.X_OK)


def test_missing_directory_source(tmp_path: Path, workspace: BuildWorkspace) -> None:
    with pytest.raises(ValidationError):
        stage(DirectorySource(tmp_path / "absent"), workspace)


def test_archive_source_extracts_under_unpack_target(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = _tarball(tmp_path / "hello-1.0.tar.gz", {"hello-1.0/hello.c": b"int main(void){return 0;}\n"})

    staged = stage(
        ArchiveSource(archive.as_uri(), sha256=_sha256(archive), unpack_target="upstream"),
        workspace,
        cache_dir=tmp_path / "downloads",
    )

    assert staged.path == workspace.source_root / "upstream"
    assert (staged.path / "hello-1.0" / "hello.c").is_file()
    assert staged.digest == _sha256(archive)


def test_zip_archive_source(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = tmp_path / "data.zip"
    with zipfile.ZipFile(archive, "w") as handle:
        handle.writestr("data/table.csv", "a,b\n")

    stage(ArchiveSource(str(archive), sha256=_sha256(archive)), workspace, cache_dir=tmp_path / "downloads")

    assert (workspace.source_root / "data" / "table.csv").read_text(encoding="utf-8") == "a,b\n"


def test_corrupted_archive_fails_integrity_without_partial_files(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = _tarball(tmp_path / "hello-1.0.tar.gz", {"hello-1.0/hello.c": b"int main;\n"})
    expected = _sha256(archive)
    data = bytearray(archive.read_bytes())
    data[len(data) // 2] ^= 0xFF
    archive.write_bytes(bytes(data))

    with pytest.raises(IntegrityMismatch):
        stage(ArchiveSource(archive.as_uri(), sha256=expected), workspace, cache_dir=tmp_path / "downloads")

    assert list(workspace.source_root.iterdir()) == []


def test_undecodable_archive_with_matching_hash_is_rejected(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = tmp_path / "broken.tar.gz"
    archive.write_bytes(b"\x1f\x8b\x08\x00" + b"garbage" * 20)

    with pytest.raises(IntegrityMismatch):
        stage(ArchiveSource(archive.as_uri(), sha256=_sha256(archive)), workspace, cache_dir=tmp_path / "downloads")

    assert list(workspace.source_root.iterdir()) == []


def test_archive_with_escaping_member_is_rejected(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = _tarball(tmp_path / "evil.tar.gz", {"../escape.txt": b"nope"})

    with pytest.raises(IntegrityMismatch):
        stage(ArchiveSource(archive.as_uri(), sha256=_sha256(archive)), workspace, cache_dir=tmp_path / "downloads")

    assert not (workspace.root / "escape.txt").exists()


def test_file_source_is_copied_without_extraction(tmp_path: Path, workspace: BuildWorkspace) -> None:
    archive = _tarball(tmp_path / "blob.tar.gz", {"x": b"x"})

    staged = stage(
        FileSource(archive.as_uri(), sha256=_sha256(archive), filename="vendor/blob.tar.gz"),
        workspace,
        cache_dir=tmp_path / "downloads",
    )

    assert staged.path == workspace.source_root / "vendor" / "blob.tar.gz"
    assert staged.path.read_bytes() == archive.read_bytes()


def test_git_source_excludes_metadata(tmp_path: Path, workspace: BuildWorkspace) -> None:
    repo = tmp_path / "libfoo.git"
    commit = _create_repo(repo)

    staged = stage(GitSource(str(repo), revision=commit), workspace, cache_dir=tmp_path / "downloads")

    assert staged.path == workspace.source_root / "libfoo"
    assert staged.digest == commit
    assert (staged.path / "foo.c").is_file()
    assert not (staged.path / ".git").exists()


def test_remote_sources_respect_offline_policy(workspace: BuildWorkspace, tmp_path: Path) -> None:
    with pytest.raises(PolicyError):
        stage(
            ArchiveSource("https://example.invalid/src.tar.gz", sha256="0" * 64),
            workspace,
            cache_dir=tmp_path / "downloads",
            policy=Policy(network_mode="offline"),
        )


@pytest.mark.parametrize(
    "descriptor",
    [
        ArchiveSource("https://example.invalid/src.tar.gz", sha256=""),
        FileSource("https://example.invalid/patch.diff", sha256=""),
        GitSource("https://example.invalid/repo.git", revision=""),
        DirectorySource("bundled", target="../outside"),
        ArchiveSource("https://example.invalid/src.tar.gz", sha256="0" * 64, unpack_target="/abs"),
    ],
)
def test_invalid_descriptors_are_rejected(descriptor: object) -> None:
    with pytest.raises(ValidationError):
        validate_source(descriptor)  # type: ignore[arg-type]


def _tarball(path: Path, members: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as archive:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return path


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _create_repo(path: Path) -> str:
    path.mkdir(parents=True)
    for argv in (
        ["init", "--quiet"],
        ["config", "user.email", "binforge@example.com"],
        ["config", "user.name", "Binforge Test"],
    ):
        subprocess.run(["git", *argv], cwd=path, check=True, capture_output=True)
    (path / "foo.c").write_text("int foo(void) { return 1; }\n", encoding="utf-8")
    subprocess.run(["git", "add", "foo.c"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "--quiet", "-m", "initial"], cwd=path, check=True, capture_output=True)
    completed = subprocess.run(["git", "rev-parse", "HEAD"], cwd=path, check=True, capture_output=True, text=True)
    return completed.stdout.strip()
