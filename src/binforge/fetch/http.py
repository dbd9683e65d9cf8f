"""Integrity-enforced HTTP/file fetch with bounded retries."""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import urlopen

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from binforge.errors import FetchFailed, IntegrityMismatch, ValidationError
from binforge.policy import Policy, ensure_network_allowed

_CHUNK = 1 << 20


class _TransientFetchError(Exception):
    """Transport-level failure worth another attempt."""


def fetch(
    url: str,
    *,
    sha256: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> Path:
    """Fetch content and return a content-addressed cached path.

    Bytes are written to a temporary file next to the cache entry and only moved
    into place once their digest equals ``sha256``.
    """
    policy = policy or Policy()
    if not sha256:
        raise ValidationError("fetch() requires a sha256 value.", context={"url": url})
    expected = sha256.lower()
    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)
    artifact_path = cache_path / expected

    if artifact_path.exists():
        _assert_hash_matches(artifact_path, expected_sha256=expected, url=url)
        return artifact_path

    if _is_remote(url):
        ensure_network_allowed(policy=policy, operation="fetch")

    fd, temp_name = tempfile.mkstemp(prefix=".download-", dir=str(cache_path))
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        retrying = Retrying(
            stop=stop_after_attempt(max(policy.fetch_retries, 1)),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(_TransientFetchError),
            reraise=True,
        )
        try:
            actual = retrying(_download, url, temp_path, policy.fetch_timeout)
        except _TransientFetchError as exc:
            raise FetchFailed(
                "Fetch failed after retries were exhausted.",
                hint="Check network connectivity or the source URL.",
                context={
                    "operation": "fetch",
                    "url": url,
                    "attempts": str(policy.fetch_retries),
                    "error": str(exc.__cause__ or exc),
                },
            ) from exc

        if actual != expected:
            raise IntegrityMismatch(
                "Fetched content hash mismatch.",
                hint="Update the expected hash or source URL to a trusted immutable artifact.",
                context={"operation": "fetch", "url": url, "expected": expected, "actual": actual},
            )
        os.replace(temp_path, artifact_path)
    finally:
        temp_path.unlink(missing_ok=True)
    return artifact_path


def sha256_file(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _download(url: str, destination: Path, timeout: float) -> str:
    digest = hashlib.sha256()
    source = url if urlparse(url).scheme else Path(url).resolve().as_uri()
    try:
        with urlopen(source, timeout=timeout) as response, open(destination, "wb") as out:  # noqa: S310 - digest checked by caller
            for chunk in iter(lambda: response.read(_CHUNK), b""):
                digest.update(chunk)
                out.write(chunk)
    except HTTPError as exc:
        if exc.code >= 500 or exc.code == 429:
            raise _TransientFetchError(f"HTTP {exc.code}") from exc
        raise FetchFailed(
            f"Server rejected the request with HTTP {exc.code}.",
            context={"operation": "fetch", "url": url},
        ) from exc
    except URLError as exc:
        if isinstance(exc.reason, FileNotFoundError):
            raise FetchFailed(
                "Local source file does not exist.",
                context={"operation": "fetch", "url": url},
            ) from exc
        raise _TransientFetchError(str(exc.reason)) from exc
    except (ConnectionError, TimeoutError) as exc:
        raise _TransientFetchError(str(exc)) from exc
    return digest.hexdigest()


def _is_remote(url: str) -> bool:
    return urlparse(url).scheme not in ("", "file")


def _assert_hash_matches(path: Path, *, expected_sha256: str, url: str) -> None:
    actual_sha256 = sha256_file(path)
    if actual_sha256 != expected_sha256:
        raise IntegrityMismatch(
            "Cached artifact hash mismatch.",
            hint="Clear cache and refetch with trusted inputs.",
            context={
                "operation": "fetch",
                "url": url,
                "path": str(path),
                "expected": expected_sha256,
                "actual": actual_sha256,
            },
        )
