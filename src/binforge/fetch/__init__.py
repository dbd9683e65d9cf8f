"""Integrity-checked retrieval of remote and local inputs."""

from .git import GitFetchResult, MutableRefWarning, fetch_git
from .http import fetch, sha256_file

__all__ = ["GitFetchResult", "MutableRefWarning", "fetch", "fetch_git", "sha256_file"]
