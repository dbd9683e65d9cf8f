"""Shared types for binary-format capabilities."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class BinaryFormatError(ValueError):
    """The file carries a known signature but its structure cannot be parsed."""


class RewriteError(RuntimeError):
    """Library search directives could not be rewritten."""


@dataclass(frozen=True, slots=True)
class BinaryInfo:
    """What the audit needs to know about one dynamically linked binary.

    ``machine`` is a platform architecture family (``x86_64``, ``i686``,
    ``aarch64``, ``arm``, ``powerpc64le``, ``riscv64``) or ``None`` if unknown.
    """

    path: Path
    format: str
    machine: str | None
    linkable: bool
    needed: tuple[str, ...] = ()
    rpaths: tuple[str, ...] = ()
    soname: str | None = None
    symbol_versions: tuple[str, ...] = ()
    symbols: tuple[str, ...] = ()


class BinaryFormat(Protocol):
    name: str
    origin_token: str

    def matches(self, header: bytes) -> bool:
        """Return whether ``header`` (the first bytes of a file) carries this format's signature."""

    def inspect(self, path: Path) -> BinaryInfo:
        """Parse the file's dynamic-linkage metadata."""

    def list_linked_libraries(self, path: Path) -> list[str]:
        """Libraries required at load time, in declaration order."""

    def rewrite_search_paths(
        self,
        path: Path,
        *,
        rpaths: Sequence[str],
        renames: Mapping[str, str],
        install_id: str | None = None,
    ) -> None:
        """Replace the search path list and rename linked libraries, in place.

        ``install_id`` replaces the library's own install name where the format has one.
        """


def read_cstring(data: bytes | bytearray, offset: int) -> str:
    if offset < 0 or offset >= len(data):
        raise BinaryFormatError(f"String offset {offset:#x} out of bounds.")
    end = data.find(b"\x00", offset)
    if end == -1:
        end = len(data)
    return bytes(data[offset:end]).decode("utf-8", errors="replace")


def write_cstring(data: bytearray, offset: int, capacity: int, value: str) -> bool:
    """Write ``value`` NUL-padded into ``capacity`` bytes; False if it does not fit."""
    encoded = value.encode("utf-8")
    if len(encoded) > capacity:
        return False
    data[offset : offset + capacity + 1] = encoded + b"\x00" * (capacity + 1 - len(encoded))
    return True


__all__ = [
    "BinaryFormat",
    "BinaryFormatError",
    "BinaryInfo",
    "RewriteError",
    "read_cstring",
    "write_cstring",
]
