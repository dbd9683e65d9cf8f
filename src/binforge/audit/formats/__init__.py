"""Binary-format capabilities selected by file signature."""

from __future__ import annotations

from pathlib import Path

from .base import BinaryFormat, BinaryFormatError, BinaryInfo, RewriteError
from .elf import ElfFormat
from .macho import MachOFormat
from .pe import PeFormat

HEADER_PROBE_SIZE = 4096


def default_formats() -> tuple[BinaryFormat, ...]:
    return (ElfFormat(), MachOFormat(), PeFormat())


def detect_format(
    path: str | Path,
    formats: tuple[BinaryFormat, ...] | None = None,
) -> BinaryFormat | None:
    """Return the capability whose signature matches ``path``, by content not extension."""
    with open(path, "rb") as handle:
        header = handle.read(HEADER_PROBE_SIZE)
    for binary_format in formats or default_formats():
        if binary_format.matches(header):
            return binary_format
    return None


__all__ = [
    "BinaryFormat",
    "BinaryFormatError",
    "BinaryInfo",
    "ElfFormat",
    "MachOFormat",
    "PeFormat",
    "RewriteError",
    "default_formats",
    "detect_format",
]
