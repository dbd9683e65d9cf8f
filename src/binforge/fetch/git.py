"""Git fetch pinned to an immutable revision, cached by commit."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
import warnings
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from binforge.errors import FetchFailed, PolicyError, RevisionNotFound, ValidationError
from binforge.policy import MutableRefPolicy, Policy, ensure_network_allowed

COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")
_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:")


class MutableRefWarning(UserWarning):
    """Warning raised when fetching a mutable git ref."""


@dataclass(frozen=True, slots=True)
class GitFetchResult:
    path: Path
    commit: str
    tree_hash: str
    mutable_ref: bool


def fetch_git(
    repo: str,
    *,
    revision: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> GitFetchResult:
    """Clone ``repo`` into the cache and check out ``revision``.

    The cached checkout is keyed by the resolved commit so later stages can copy
    from it without touching the network again.
    """
    policy = policy or Policy()
    if not revision:
        raise ValidationError("fetch_git() requires a revision.", context={"repo": repo})
    if _is_remote(repo):
        ensure_network_allowed(policy=policy, operation="fetch_git")

    mutable_ref = not COMMIT_PATTERN.fullmatch(revision)
    _enforce_mutable_ref_policy(ref=revision, policy=policy.mutable_ref_policy, mutable_ref=mutable_ref)
    commit = _resolve_commit(repo=repo, ref=revision)

    cache_root = Path(cache_dir)
    cache_root.mkdir(parents=True, exist_ok=True)
    checkout_path = cache_root / commit
    if checkout_path.exists():
        _verify_cached_checkout(checkout_path=checkout_path, commit=commit)
        tree_hash = _run_git(["rev-parse", "HEAD^{tree}"], cwd=checkout_path)
        return GitFetchResult(path=checkout_path, commit=commit, tree_hash=tree_hash, mutable_ref=mutable_ref)

    temp_root = Path(tempfile.mkdtemp(prefix="binforge-git-", dir=str(cache_root)))
    try:
        _clone(repo, temp_root, attempts=policy.fetch_retries if _is_remote(repo) else 1)
        if not _has_commit(temp_root, commit):
            # Servers may still serve commits that are not reachable from advertised refs.
            subprocess.run(
                ["git", "fetch", "--quiet", "origin", commit],
                cwd=temp_root,
                check=False,
                capture_output=True,
                text=True,
            )
        if not _has_commit(temp_root, commit):
            raise RevisionNotFound(
                "Pinned revision does not exist in the repository.",
                hint="Pin a commit that is reachable in the remote repository.",
                context={"operation": "fetch_git", "repo": repo, "revision": revision},
            )
        _run_git(["checkout", "--quiet", commit], cwd=temp_root)
        tree_hash = _run_git(["rev-parse", "HEAD^{tree}"], cwd=temp_root)
        try:
            # Fails when a concurrent fetch of the same commit populated the entry first.
            os.rename(temp_root, checkout_path)
        except OSError:
            if not checkout_path.is_dir():
                raise
            _verify_cached_checkout(checkout_path=checkout_path, commit=commit)
    finally:
        if temp_root.exists():
            shutil.rmtree(temp_root, ignore_errors=True)

    return GitFetchResult(path=checkout_path, commit=commit, tree_hash=tree_hash, mutable_ref=mutable_ref)


def _clone(repo: str, destination: Path, *, attempts: int) -> None:
    retrying = Retrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=0.5, max=8),
        retry=retry_if_exception_type(FetchFailed),
        reraise=True,
    )
    retrying(_run_git, ["clone", "--quiet", "--no-checkout", repo, str(destination)], transport=True)


def _enforce_mutable_ref_policy(*, ref: str, policy: MutableRefPolicy, mutable_ref: bool) -> None:
    if not mutable_ref:
        return
    if policy == "allow":
        return
    if policy == "warn":
        warnings.warn(
            f"Mutable git ref `{ref}` was requested; result is not inherently reproducible.",
            MutableRefWarning,
            stacklevel=3,
        )
        return
    if policy == "error":
        raise PolicyError(
            "Mutable git refs are not allowed by policy.",
            hint="Use a full 40-char commit SHA or relax mutable_ref_policy.",
            context={"operation": "fetch_git", "ref": ref, "policy": policy},
        )
    raise ValidationError(f"Unsupported mutable_ref_policy value: {policy}")


def _resolve_commit(*, repo: str, ref: str) -> str:
    if COMMIT_PATTERN.fullmatch(ref):
        return ref
    output = _run_git(["ls-remote", repo, ref], transport=True)
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise RevisionNotFound(
            "Unable to resolve git ref.",
            hint="Ensure the repository and ref are valid and reachable.",
            context={"operation": "fetch_git", "repo": repo, "ref": ref},
        )
    return lines[0].split()[0]


def _has_commit(checkout: Path, commit: str) -> bool:
    completed = subprocess.run(
        ["git", "cat-file", "-e", f"{commit}^{{commit}}"],
        cwd=checkout,
        check=False,
        capture_output=True,
        text=True,
    )
    return completed.returncode == 0


def _verify_cached_checkout(*, checkout_path: Path, commit: str) -> None:
    cached_commit = _run_git(["rev-parse", "HEAD"], cwd=checkout_path)
    if cached_commit != commit:
        raise ValidationError(
            "Cached git checkout does not match expected commit.",
            hint="Delete cache entry and refetch immutable source.",
            context={
                "operation": "fetch_git",
                "path": str(checkout_path),
                "expected_commit": commit,
                "actual_commit": cached_commit,
            },
        )


def _is_remote(repo: str) -> bool:
    if _SCP_LIKE.match(repo):
        return True
    return urlparse(repo).scheme not in ("", "file")


def _run_git(argv: list[str], cwd: Path | None = None, *, transport: bool = False) -> str:
    command = ["git", *argv]
    completed = subprocess.run(
        command,
        cwd=cwd,
        check=False,
        text=True,
        capture_output=True,
    )
    if completed.returncode != 0:
        error = FetchFailed if transport else ValidationError
        raise error(
            "Git command failed.",
            hint="Inspect repository/revision inputs and git installation.",
            context={
                "operation": "fetch_git",
                "argv": " ".join(command),
                "stderr": completed.stderr.strip(),
            },
        )
    return completed.stdout.strip()
