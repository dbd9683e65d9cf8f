"""Mach-O load-command reader and install-name/rpath rewriter.

Thin 32/64-bit images of either byte order are supported, as are universal
(fat) files, whose slices are inspected and rewritten one by one.
"""

from __future__ import annotations

import shutil
import struct
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from binforge.audit.formats.base import (
    BinaryFormatError,
    BinaryInfo,
    RewriteError,
    read_cstring,
    write_cstring,
)

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE
_THIN_MAGICS = {
    struct.pack("<I", MH_MAGIC),
    struct.pack(">I", MH_MAGIC),
    struct.pack("<I", MH_MAGIC_64),
    struct.pack(">I", MH_MAGIC_64),
}

MH_EXECUTE = 2
MH_DYLIB = 6
MH_BUNDLE = 8

LC_REQ_DYLD = 0x80000000
LC_LOAD_DYLIB = 0xC
LC_ID_DYLIB = 0xD
LC_LOAD_WEAK_DYLIB = 0x18 | LC_REQ_DYLD
LC_RPATH = 0x1C | LC_REQ_DYLD
LC_REEXPORT_DYLIB = 0x1F | LC_REQ_DYLD
_LOAD_COMMANDS = frozenset({LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_REEXPORT_DYLIB})

CPU_ARCH_ABI64 = 0x01000000
MACHINES: dict[int, str] = {
    7: "i686",
    7 | CPU_ARCH_ABI64: "x86_64",
    12: "arm",
    12 | CPU_ARCH_ABI64: "aarch64",
    18 | CPU_ARCH_ABI64: "powerpc64le",
}

# Universal headers share their magic with Java class files; real ones list few slices.
_MAX_FAT_SLICES = 16


@dataclass(frozen=True, slots=True)
class _Command:
    cmd: int
    offset: int
    size: int
    string_offset: int

    @property
    def capacity(self) -> int:
        return self.size - (self.string_offset - self.offset) - 1


@dataclass(frozen=True, slots=True)
class _Slice:
    endian: str
    cputype: int
    filetype: int
    commands: tuple[_Command, ...]


@dataclass(slots=True)
class MachOFormat:
    name: str = "macho"
    origin_token: str = "@loader_path"
    install_name_tool: str = "install_name_tool"

    def matches(self, header: bytes) -> bool:
        if header[:4] in _THIN_MAGICS:
            return True
        if len(header) >= 8 and struct.unpack_from(">I", header, 0)[0] == FAT_MAGIC:
            return 0 < struct.unpack_from(">I", header, 4)[0] <= _MAX_FAT_SLICES
        return False

    def inspect(self, path: Path) -> BinaryInfo:
        data = Path(path).read_bytes()
        slices = list(_slices(data))
        if not slices:
            raise BinaryFormatError("Mach-O file contains no slices.")
        needed: list[str] = []
        rpaths: list[str] = []
        soname = None
        # Every slice of a universal binary is audited against the first slice's linkage.
        first = slices[0][1]
        base = slices[0][0]
        for command in first.commands:
            value = read_cstring(data, base + command.string_offset)
            if command.cmd in _LOAD_COMMANDS:
                needed.append(value)
            elif command.cmd == LC_RPATH:
                rpaths.append(value)
            elif command.cmd == LC_ID_DYLIB:
                soname = value
        machines = {MACHINES.get(s.cputype) for _, s in slices}
        machine = machines.pop() if len(machines) == 1 else None
        return BinaryInfo(
            path=Path(path),
            format=self.name,
            machine=machine,
            linkable=first.filetype in (MH_EXECUTE, MH_DYLIB, MH_BUNDLE),
            needed=tuple(needed),
            rpaths=tuple(rpaths),
            soname=soname,
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
        """Rewrite LC_RPATH, dylib names and LC_ID_DYLIB in place when every string fits its command."""
        data = bytearray(Path(path).read_bytes())
        old_rpaths: list[str] = []
        in_place = True
        for base, parsed in _slices(bytes(data)):
            rpath_commands = [c for c in parsed.commands if c.cmd == LC_RPATH]
            slice_rpaths = [read_cstring(data, base + c.string_offset) for c in rpath_commands]
            if not old_rpaths:
                old_rpaths = slice_rpaths
            if len(rpath_commands) != len(rpaths):
                in_place = False
                break
            for command, value in zip(rpath_commands, rpaths):
                if not write_cstring(data, base + command.string_offset, command.capacity, value):
                    in_place = False
            for command in parsed.commands:
                if command.cmd not in _LOAD_COMMANDS:
                    continue
                current = read_cstring(data, base + command.string_offset)
                if current in renames and not write_cstring(
                    data, base + command.string_offset, command.capacity, renames[current]
                ):
                    in_place = False
            if install_id is not None:
                for command in parsed.commands:
                    if command.cmd == LC_ID_DYLIB and not write_cstring(
                        data, base + command.string_offset, command.capacity, install_id
                    ):
                        in_place = False
            if not in_place:
                break
        if in_place:
            Path(path).write_bytes(bytes(data))
            return
        self._install_name_tool(Path(path), old_rpaths, rpaths, renames, install_id)

    def _install_name_tool(
        self,
        path: Path,
        old_rpaths: Sequence[str],
        rpaths: Sequence[str],
        renames: Mapping[str, str],
        install_id: str | None,
    ) -> None:
        executable = shutil.which(self.install_name_tool)
        if executable is None:
            raise RewriteError(
                f"New load commands do not fit in place and `{self.install_name_tool}` is not installed."
            )
        argv = [executable]
        for old in old_rpaths:
            argv.extend(["-delete_rpath", old])
        for new in rpaths:
            argv.extend(["-add_rpath", new])
        for old, new in sorted(renames.items()):
            argv.extend(["-change", old, new])
        if install_id is not None:
            argv.extend(["-id", install_id])
        completed = subprocess.run([*argv, str(path)], check=False, capture_output=True, text=True)
        if completed.returncode != 0:
            raise RewriteError(f"install_name_tool failed: {completed.stderr.strip()}")


def _slices(data: bytes) -> Iterator[tuple[int, _Slice]]:
    if len(data) < 8:
        raise BinaryFormatError("Truncated Mach-O header.")
    if struct.unpack_from(">I", data, 0)[0] == FAT_MAGIC:
        count = struct.unpack_from(">I", data, 4)[0]
        for index in range(count):
            try:
                _, _, offset, size, _ = struct.unpack_from(">iiIII", data, 8 + index * 20)
            except struct.error as exc:
                raise BinaryFormatError(f"Malformed universal header: {exc}") from exc
            yield offset, _parse_thin(data, offset)
        return
    yield 0, _parse_thin(data, 0)


def _parse_thin(data: bytes, base: int) -> _Slice:
    raw_magic = data[base : base + 4]
    if raw_magic not in _THIN_MAGICS:
        raise BinaryFormatError(f"Unexpected Mach-O magic at {base:#x}.")
    endian = "<" if struct.unpack_from("<I", raw_magic)[0] in (MH_MAGIC, MH_MAGIC_64) else ">"
    magic = struct.unpack_from(f"{endian}I", raw_magic)[0]
    header_size = 32 if magic == MH_MAGIC_64 else 28
    try:
        _, cputype, _, filetype, ncmds, _, _ = struct.unpack_from(f"{endian}IiiIIII", data, base)
        commands: list[_Command] = []
        offset = header_size
        for _ in range(ncmds):
            cmd, cmdsize = struct.unpack_from(f"{endian}II", data, base + offset)
            if cmdsize < 8:
                raise BinaryFormatError("Mach-O load command with invalid size.")
            if cmd in _LOAD_COMMANDS or cmd in (LC_ID_DYLIB, LC_RPATH):
                string_offset = struct.unpack_from(f"{endian}I", data, base + offset + 8)[0]
                commands.append(
                    _Command(cmd=cmd, offset=offset, size=cmdsize, string_offset=offset + string_offset)
                )
            offset += cmdsize
    except struct.error as exc:
        raise BinaryFormatError(f"Malformed Mach-O load commands: {exc}") from exc
    return _Slice(endian=endian, cputype=cputype, filetype=filetype, commands=tuple(commands))


__all__ = ["FAT_MAGIC", "MH_MAGIC", "MH_MAGIC_64", "MACHINES", "MachOFormat"]
