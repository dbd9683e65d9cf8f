import hashlib
import subprocess
import warnings
from pathlib import Path

import pytest

from binforge.errors import FetchFailed, IntegrityMismatch, PolicyError, RevisionNotFound, ValidationError
from binforge.fetch import MutableRefWarning, fetch, fetch_git
from binforge.fetch import git as git_fetch
from binforge.fetch import http as http_fetch
from binforge.policy import Policy


def test_fetch_requires_sha256(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_text("payload", encoding="utf-8")

    with pytest.raises(ValidationError):
        fetch(source.as_uri(), sha256="", cache_dir=tmp_path / "cache")


def test_fetch_caches_by_content_hash(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    payload = b"hello binforge"
    source.write_bytes(payload)
    digest = hashlib.sha256(payload).hexdigest()

    first = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")
    source.write_bytes(b"mutated source content")
    second = fetch(str(source), sha256=digest.upper(), cache_dir=tmp_path / "cache")

    assert first == second == tmp_path / "cache" / digest
    assert second.read_bytes() == payload


def test_fetch_raises_on_hash_mismatch_and_leaves_no_cache_entry(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"mismatch")

    with pytest.raises(IntegrityMismatch) as excinfo:
        fetch(source.as_uri(), sha256="0" * 64, cache_dir=tmp_path / "cache")

    assert excinfo.value.context["actual"] == hashlib.sha256(b"mismatch").hexdigest()
    assert list((tmp_path / "cache").iterdir()) == []


def test_tampered_cache_entry_is_detected(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"original")
    digest = hashlib.sha256(b"original").hexdigest()
    cached = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")
    cached.write_bytes(b"tampered")

    with pytest.raises(IntegrityMismatch):
        fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")


def test_fetch_missing_local_file_fails(tmp_path: Path) -> None:
    with pytest.raises(FetchFailed):
        fetch(str(tmp_path / "absent.tar.gz"), sha256="0" * 64, cache_dir=tmp_path / "cache")


def test_offline_policy_blocks_remote_fetch(tmp_path: Path) -> None:
    with pytest.raises(PolicyError):
        fetch(
            "https://example.invalid/src.tar.gz",
            sha256="0" * 64,
            cache_dir=tmp_path / "cache",
            policy=Policy(network_mode="offline"),
        )


def test_offline_policy_still_allows_local_files(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"local")
    digest = hashlib.sha256(b"local").hexdigest()

    path = fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache", policy=Policy(network_mode="offline"))

    assert path.read_bytes() == b"local"


def test_transient_failures_are_retried(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    payload = b"eventually"
    digest = hashlib.sha256(payload).hexdigest()
    attempts: list[int] = []

    def flaky(url: str, destination: Path, timeout: float) -> str:
        attempts.append(1)
        if len(attempts) < 2:
            raise http_fetch._TransientFetchError("connection reset")
        destination.write_bytes(payload)
        return digest

    monkeypatch.setattr(http_fetch, "_download", flaky)

    path = fetch("https://example.invalid/a", sha256=digest, cache_dir=tmp_path / "cache")

    assert len(attempts) == 2
    assert path.read_bytes() == payload


def test_exhausted_retries_raise_fetch_failed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    attempts: list[int] = []

    def broken(url: str, destination: Path, timeout: float) -> str:
        attempts.append(1)
        raise http_fetch._TransientFetchError("connection refused")

    monkeypatch.setattr(http_fetch, "_download", broken)

    with pytest.raises(FetchFailed) as excinfo:
        fetch(
            "https://example.invalid/a",
            sha256="0" * 64,
            cache_dir=tmp_path / "cache",
            policy=Policy(fetch_retries=2),
        )

    assert len(attempts) == 2
    assert excinfo.value.context["attempts"] == "2"


def test_fetch_git_resolves_commit_and_caches(tmp_path: Path) -> None:
    repo, commit, tree_hash = _create_repo(tmp_path / "repo")
    cache_dir = tmp_path / "git-cache"

    first = fetch_git(str(repo), revision=commit, cache_dir=cache_dir)
    second = fetch_git(str(repo), revision=commit, cache_dir=cache_dir)

    assert first.path == second.path == cache_dir / commit
    assert first.commit == commit
    assert first.tree_hash == tree_hash
    assert first.mutable_ref is False
    assert (first.path / "README.md").read_text(encoding="utf-8") == "hello repo\n"


def test_concurrent_fetch_of_the_same_commit_keeps_one_clean_checkout(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo, commit, _ = _create_repo(tmp_path / "repo")
    cache_dir = tmp_path / "git-cache"
    real_rename = git_fetch.os.rename
    racing: list[str] = []

    def rename_after_a_competing_fetch(source, target) -> None:
        if not racing:
            racing.append(str(source))
            fetch_git(str(repo), revision=commit, cache_dir=cache_dir)
        real_rename(source, target)

    monkeypatch.setattr(git_fetch.os, "rename", rename_after_a_competing_fetch)

    result = fetch_git(str(repo), revision=commit, cache_dir=cache_dir)

    assert result.path == cache_dir / commit
    assert len(racing) == 1
    assert sorted(p.name for p in cache_dir.iterdir()) == [commit]
    assert sorted(p.name for p in result.path.iterdir()) == [".git", "README.md"]


def test_fetch_git_rejects_mutable_ref_by_default(tmp_path: Path) -> None:
    repo, _, _ = _create_repo(tmp_path / "repo")

    with pytest.raises(PolicyError) as excinfo:
        fetch_git(str(repo), revision="main", cache_dir=tmp_path / "cache")

    assert "not allowed" in str(excinfo.value)


def test_fetch_git_can_downgrade_mutable_ref_to_warning(tmp_path: Path) -> None:
    repo, commit, _ = _create_repo(tmp_path / "repo")

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = fetch_git(
            str(repo),
            revision="main",
            cache_dir=tmp_path / "cache",
            policy=Policy(mutable_ref_policy="warn"),
        )

    assert result.mutable_ref is True
    assert result.commit == commit
    assert any(isinstance(item.message, MutableRefWarning) for item in caught)


def test_fetch_git_missing_revision(tmp_path: Path) -> None:
    repo, _, _ = _create_repo(tmp_path / "repo")

    with pytest.raises(RevisionNotFound):
        fetch_git(str(repo), revision="0" * 40, cache_dir=tmp_path / "cache")

    assert not (tmp_path / "cache" / ("0" * 40)).exists()


def test_fetch_git_unknown_branch(tmp_path: Path) -> None:
    repo, _, _ = _create_repo(tmp_path / "repo")

    with pytest.raises(RevisionNotFound):
        fetch_git(
            str(repo),
            revision="no-such-branch",
            cache_dir=tmp_path / "cache",
            policy=Policy(mutable_ref_policy="allow"),
        )


def _create_repo(path: Path) -> tuple[Path, str, str]:
    path.mkdir(parents=True, exist_ok=True)
    _run_git(["init"], cwd=path)
    _run_git(["checkout", "-b", "main"], cwd=path)
    _run_git(["config", "user.email", "binforge@example.com"], cwd=path)
    _run_git(["config", "user.name", "Binforge Test"], cwd=path)

    (path / "README.md").write_text("hello repo\n", encoding="utf-8")
    _run_git(["add", "README.md"], cwd=path)
    _run_git(["commit", "-m", "initial"], cwd=path)

    commit = _run_git(["rev-parse", "HEAD"], cwd=path)
    tree_hash = _run_git(["rev-parse", "HEAD^{tree}"], cwd=path)
    return path, commit, tree_hash


def _run_git(argv: list[str], *, cwd: Path) -> str:
    completed = subprocess.run(
        ["git", *argv],
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        raise RuntimeError(f"git {' '.join(argv)} failed: {completed.stderr.strip()}")
    return completed.stdout.strip()
