"""ELF dynamic-linkage reader and rpath rewriter.

Parsing goes through pyelftools. The dynamic table is taken from the
``PT_DYNAMIC`` program header when there is one, so images whose section
headers were stripped still report their ``DT_NEEDED`` entries.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection, DynamicSegment
from elftools.elf.elffile import ELFFile
from elftools.elf.gnuversions import GNUVerNeedSection
from elftools.elf.sections import SymbolTableSection

from binforge.audit.formats.base import (
    BinaryFormatError,
    BinaryInfo,
    RewriteError,
    read_cstring,
    write_cstring,
)

ELF_MAGIC = b"\x7fELF"

LINKABLE_TYPES = frozenset({"ET_EXEC", "ET_DYN"})

MACHINES: dict[str, str] = {
    "EM_386": "i686",
    "EM_ARM": "arm",
    "EM_X86_64": "x86_64",
    "EM_PPC64": "powerpc64le",
    "EM_AARCH64": "aarch64",
    "EM_RISCV": "riscv64",
}


@dataclass(frozen=True, slots=True)
class _Linkage:
    elf_type: str
    machine: str | None
    needed: tuple[str, ...] = ()
    rpaths: tuple[str, ...] = ()
    soname: str | None = None
    # File offset of the DT_RUNPATH string, or of DT_RPATH when there is no runpath.
    search_path_offset: int | None = None
    symbol_versions: tuple[str, ...] = ()
    symbols: tuple[str, ...] = ()


@dataclass(slots=True)
class ElfFormat:
    name: str = "elf"
    origin_token: str = "$ORIGIN"
    patchelf: str = "patchelf"

    def matches(self, header: bytes) -> bool:
        return header.startswith(ELF_MAGIC)

    def inspect(self, path: Path) -> BinaryInfo:
        linkage = _read(Path(path))
        return BinaryInfo(
            path=Path(path),
            format=self.name,
            machine=linkage.machine,
            linkable=linkage.elf_type in LINKABLE_TYPES,
            needed=linkage.needed,
            rpaths=linkage.rpaths,
            soname=linkage.soname,
            symbol_versions=linkage.symbol_versions,
            symbols=linkage.symbols,
        )

    def list_linked_libraries(self, path: Path) -> list[str]:
        return list(self.inspect(path).needed)

    def rewrite_search_paths(
        self,
        path: Path,
        *,
        rpaths: Sequence[str],
        renames: Mapping[str, str],
        install_id: str | None = None,
    ) -> None:
        """Overwrite DT_RUNPATH/DT_RPATH in place when the new value fits; otherwise use patchelf.

        ELF has no install name; ``install_id`` is accepted and ignored.
        """
        value = ":".join(rpaths)
        offset = _read(Path(path)).search_path_offset
        if not renames and offset is not None:
            data = bytearray(Path(path).read_bytes())
            capacity = len(read_cstring(data, offset).encode("utf-8"))
            if write_cstring(data, offset, capacity, value):
                Path(path).write_bytes(bytes(data))
                return
        self._patchelf(Path(path), value, renames)

    def _patchelf(self, path: Path, value: str, renames: Mapping[str, str]) -> None:
        executable = shutil.which(self.patchelf)
        if executable is None:
            raise RewriteError(
                f"New search path does not fit in place and `{self.patchelf}` is not installed."
            )
        commands = [[executable, "--set-rpath", value, str(path)]]
        for old, new in sorted(renames.items()):
            commands.append([executable, "--replace-needed", old, new, str(path)])
        for command in commands:
            completed = subprocess.run(command, check=False, capture_output=True, text=True)
            if completed.returncode != 0:
                raise RewriteError(f"patchelf failed: {completed.stderr.strip()}")


def _read(path: Path) -> _Linkage:
    with open(path, "rb") as handle:
        try:
            elf = ELFFile(handle)
            return _linkage(elf)
        except (ELFError, ValueError) as exc:
            raise BinaryFormatError(f"Malformed ELF image: {exc}") from exc


def _linkage(elf: ELFFile) -> _Linkage:
    elf_type = str(elf.header["e_type"])
    machine = MACHINES.get(str(elf.header["e_machine"]))
    versions, symbols = _version_needs_and_symbols(elf)
    dynamic = _dynamic_table(elf)
    if dynamic is None:
        return _Linkage(elf_type=elf_type, machine=machine, symbol_versions=versions, symbols=symbols)

    strtab = _string_table_offset(elf, dynamic)
    if strtab is None:
        raise BinaryFormatError("ELF dynamic table has no locatable string table.")

    needed: list[str] = []
    rpaths: list[str] = []
    soname = None
    runpath_offset = rpath_offset = None
    for tag in dynamic.iter_tags():
        kind = tag.entry.d_tag
        if kind == "DT_NEEDED":
            needed.append(tag.needed)
        elif kind == "DT_SONAME":
            soname = tag.soname
        elif kind == "DT_RUNPATH":
            rpaths.extend(p for p in tag.runpath.split(":") if p)
            if runpath_offset is None:
                runpath_offset = strtab + tag.entry.d_val
        elif kind == "DT_RPATH":
            rpaths.extend(p for p in tag.rpath.split(":") if p)
            if rpath_offset is None:
                rpath_offset = strtab + tag.entry.d_val
    return _Linkage(
        elf_type=elf_type,
        machine=machine,
        needed=tuple(needed),
        rpaths=tuple(rpaths),
        soname=soname,
        search_path_offset=runpath_offset if runpath_offset is not None else rpath_offset,
        symbol_versions=versions,
        symbols=symbols,
    )


def _dynamic_table(elf: ELFFile) -> DynamicSegment | DynamicSection | None:
    for segment in elf.iter_segments():
        if isinstance(segment, DynamicSegment):
            return segment
    for section in elf.iter_sections():
        if isinstance(section, DynamicSection):
            return section
    return None


def _string_table_offset(elf: ELFFile, dynamic: DynamicSegment | DynamicSection) -> int | None:
    """File offset of the dynamic string table: DT_STRTAB first, then the section link."""
    _, offset = dynamic.get_table_offset("DT_STRTAB")
    if offset is not None:
        return offset
    for section in elf.iter_sections():
        if isinstance(section, DynamicSection):
            return elf.get_section(section["sh_link"])["sh_offset"]
    return None


def _version_needs_and_symbols(elf: ELFFile) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Version names required from other objects (``GFORTRAN_8``, ``GLIBCXX_3.4.26``, ...) and .dynsym names."""
    versions: list[str] = []
    symbols: list[str] = []
    for section in elf.iter_sections():
        if isinstance(section, GNUVerNeedSection):
            for _, auxiliaries in section.iter_versions():
                versions.extend(aux.name for aux in auxiliaries)
        elif isinstance(section, SymbolTableSection) and section["sh_type"] == "SHT_DYNSYM":
            symbols.extend(symbol.name for symbol in section.iter_symbols() if symbol.name)
    return tuple(versions), tuple(symbols)


__all__ = ["ELF_MAGIC", "ElfFormat", "MACHINES"]
