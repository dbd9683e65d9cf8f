"""PE/COFF import-table reader.

Windows resolves DLLs through the loader search order rather than embedded
search paths, so there is nothing to rewrite for relocatability.
"""

from __future__ import annotations

import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from binforge.audit.formats.base import BinaryFormatError, BinaryInfo, read_cstring

MZ_MAGIC = b"MZ"
PE_SIGNATURE = b"PE\x00\x00"
PE32 = 0x10B
PE32_PLUS = 0x20B
IMAGE_FILE_DLL = 0x2000
IMAGE_FILE_EXECUTABLE_IMAGE = 0x0002
_IMPORT_DIRECTORY = 1

MACHINES: dict[int, str] = {
    0x14C: "i686",
    0x8664: "x86_64",
    0xAA64: "aarch64",
    0x1C4: "arm",
}


@dataclass(frozen=True, slots=True)
class _SectionRange:
    virtual_address: int
    virtual_size: int
    raw_offset: int
    raw_size: int

    def contains(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + max(self.virtual_size, self.raw_size)


@dataclass(slots=True)
class PeFormat:
    name: str = "pe"
    origin_token: str = ""

    def matches(self, header: bytes) -> bool:
        if not header.startswith(MZ_MAGIC) or len(header) < 0x40:
            return False
        pe_offset = struct.unpack_from("<I", header, 0x3C)[0]
        return header[pe_offset : pe_offset + 4] == PE_SIGNATURE

    def inspect(self, path: Path) -> BinaryInfo:
        data = Path(path).read_bytes()
        try:
            pe_offset = struct.unpack_from("<I", data, 0x3C)[0]
            if data[pe_offset : pe_offset + 4] != PE_SIGNATURE:
                raise BinaryFormatError("MZ file without a PE signature.")
            machine, nsections, _, _, _, optional_size, characteristics = struct.unpack_from(
                "<HHIIIHH", data, pe_offset + 4
            )
            optional = pe_offset + 24
            magic = struct.unpack_from("<H", data, optional)[0]
            if magic == PE32:
                count_offset, directories = optional + 92, optional + 96
            elif magic == PE32_PLUS:
                count_offset, directories = optional + 108, optional + 112
            else:
                raise BinaryFormatError(f"Unknown PE optional header magic {magic:#x}.")
            sections = _sections(data, optional + optional_size, nsections)
            needed: list[str] = []
            if struct.unpack_from("<I", data, count_offset)[0] > _IMPORT_DIRECTORY:
                import_rva, _ = struct.unpack_from("<II", data, directories + 8 * _IMPORT_DIRECTORY)
                if import_rva:
                    needed = _imports(data, sections, import_rva)
        except struct.error as exc:
            raise BinaryFormatError(f"Malformed PE headers: {exc}") from exc
        return BinaryInfo(
            path=Path(path),
            format=self.name,
            machine=MACHINES.get(machine),
            linkable=bool(characteristics & (IMAGE_FILE_DLL | IMAGE_FILE_EXECUTABLE_IMAGE)),
            needed=tuple(needed),
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
        return None


def _sections(data: bytes, offset: int, count: int) -> list[_SectionRange]:
    sections = []
    for index in range(count):
        virtual_size, virtual_address, raw_size, raw_offset = struct.unpack_from(
            "<IIII", data, offset + index * 40 + 8
        )
        sections.append(
            _SectionRange(
                virtual_address=virtual_address,
                virtual_size=virtual_size,
                raw_offset=raw_offset,
                raw_size=raw_size,
            )
        )
    return sections


def _rva_to_offset(sections: list[_SectionRange], rva: int) -> int:
    for section in sections:
        if section.contains(rva):
            return rva - section.virtual_address + section.raw_offset
    raise BinaryFormatError(f"RVA {rva:#x} is not inside any section.")


def _imports(data: bytes, sections: list[_SectionRange], import_rva: int) -> list[str]:
    names: list[str] = []
    offset = _rva_to_offset(sections, import_rva)
    while True:
        lookup, _, _, name_rva, thunk = struct.unpack_from("<IIIII", data, offset)
        if not (lookup or name_rva or thunk):
            break
        names.append(read_cstring(data, _rva_to_offset(sections, name_rva)))
        offset += 20
    return names


__all__ = ["MACHINES", "PeFormat"]
