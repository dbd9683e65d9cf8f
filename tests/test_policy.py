import hashlib
import subprocess
from pathlib import Path

import pytest

from binforge.errors import PolicyError
from binforge.fetch import fetch, fetch_git
from binforge.policy import Policy, ensure_network_allowed


def test_default_policy() -> None:
    policy = Policy()

    assert policy.network_mode == "online"
    assert policy.mutable_ref_policy == "error"
    assert policy.fetch_retries == 3
    ensure_network_allowed(policy=policy, operation="fetch")


def test_offline_policy_names_the_blocked_operation() -> None:
    with pytest.raises(PolicyError) as excinfo:
        ensure_network_allowed(policy=Policy(network_mode="offline"), operation="fetch_git")

    assert excinfo.value.context == {"operation": "fetch_git"}


def test_policy_network_offline_blocks_remote_fetch_operations(tmp_path: Path) -> None:
    policy = Policy(network_mode="offline")

    with pytest.raises(PolicyError):
        fetch("https://example.invalid/payload", sha256="0" * 64, cache_dir=tmp_path / "cache", policy=policy)
    with pytest.raises(PolicyError):
        fetch_git(
            "https://example.invalid/repo.git",
            revision="0" * 40,
            cache_dir=tmp_path / "git-cache",
            policy=policy,
        )


def test_offline_policy_still_reads_local_repositories(tmp_path: Path) -> None:
    repo, commit = _create_repo(tmp_path / "repo")

    result = fetch_git(str(repo), revision=commit, cache_dir=tmp_path / "cache", policy=Policy(network_mode="offline"))

    assert result.commit == commit


def test_offline_policy_serves_cached_downloads(tmp_path: Path) -> None:
    source = tmp_path / "source.txt"
    source.write_bytes(b"payload")
    digest = hashlib.sha256(b"payload").hexdigest()
    fetch(source.as_uri(), sha256=digest, cache_dir=tmp_path / "cache")

    cached = fetch(
        "https://example.invalid/source.txt",
        sha256=digest,
        cache_dir=tmp_path / "cache",
        policy=Policy(network_mode="offline"),
    )

    assert cached.read_bytes() == b"payload"


def _create_repo(path: Path) -> tuple[Path, str]:
    path.mkdir(parents=True, exist_ok=True)
    _run_git(["init"], cwd=path)
    _run_git(["config", "user.email", "binforge@example.com"], cwd=path)
    _run_git(["config", "user.name", "Binforge Test"], cwd=path)

    (path / "README.md").write_text("hello repo\n", encoding="utf-8")
    _run_git(["add", "README.md"], cwd=path)
    _run_git(["commit", "-m", "initial"], cwd=path)
    return path, _run_git(["rev-parse", "HEAD"], cwd=path)


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
