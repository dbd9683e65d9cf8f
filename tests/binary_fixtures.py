"""Minimal ELF, Mach-O and PE images for exercising the binary readers.

Only the structures the audit reads are emitted; none of these files load.
"""

from __future__ import annotations

import struct
from collections.abc import Mapping, Sequence

ET_REL = 1
ET_EXEC = 2
ET_DYN = 3

EM_386 = 3
EM_ARM = 40
EM_X86_64 = 62
EM_AARCH64 = 183

CPU_X86_64 = 0x01000007
CPU_ARM64 = 0x0100000C
MH_EXECUTE = 2
MH_DYLIB = 6

IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664


def elf_bytes(
    *,
    machine: int = EM_X86_64,
    elf_type: int = ET_DYN,
    needed: Sequence[str] = (),
    soname: str | None = None,
    rpath: str | None = None,
    runpath: str | None = None,
    symbols: Sequence[str] = (),
    version_needs: Mapping[str, Sequence[str]] | None = None,
    section_headers: bool = True,
) -> bytes:
    """A little-endian ELF64 image: PT_LOAD and PT_DYNAMIC segments plus named sections.

    Virtual addresses equal file offsets. With ``section_headers=False`` the
    section table is left out, as ``sstrip`` does.
    """
    strtab = bytearray(b"\x00")

    def add(value: str) -> int:
        offset = len(strtab)
        strtab.extend(value.encode("utf-8") + b"\x00")
        return offset

    dynstr_offset = 64 + 2 * 56

    dynamic = [(1, add(name)) for name in needed]
    if soname is not None:
        dynamic.append((14, add(soname)))
    if rpath is not None:
        dynamic.append((15, add(rpath)))
    if runpath is not None:
        dynamic.append((29, add(runpath)))
    symtab = bytes(24) + b"".join(struct.pack("<IBBHQQ", add(name), 0x12, 0, 0, 0, 0) for name in symbols)

    verneed = bytearray()
    files = [(name, list(versions)) for name, versions in (version_needs or {}).items() if versions]
    for index, (name, versions) in enumerate(files):
        next_file = 0 if index == len(files) - 1 else 16 + 16 * len(versions)
        verneed.extend(struct.pack("<HHIII", 1, len(versions), add(name), 16, next_file))
        for position, version in enumerate(versions):
            next_aux = 0 if position == len(versions) - 1 else 16
            verneed.extend(struct.pack("<IHHII", 0, 0, position + 2, add(version), next_aux))

    dynamic.extend([(5, dynstr_offset), (10, len(strtab)), (0, 0)])
    dyn_blob = b"".join(struct.pack("<qQ", tag, value) for tag, value in dynamic)

    shstrtab = bytearray(b"\x00")
    names: dict[str, int] = {}
    for section_name in (".dynstr", ".dynsym", ".dynamic", ".gnu.version_r", ".shstrtab"):
        names[section_name] = len(shstrtab)
        shstrtab.extend(section_name.encode("ascii") + b"\x00")

    dynsym_offset = _align(dynstr_offset + len(strtab))
    verneed_offset = _align(dynsym_offset + len(symtab))
    dynamic_offset = _align(verneed_offset + len(verneed))
    shstrtab_offset = _align(dynamic_offset + len(dyn_blob))

    sections = [
        bytes(64),
        _section(names[".dynstr"], 3, dynstr_offset, len(strtab)),
        _section(names[".dynsym"], 11, dynsym_offset, len(symtab), link=1, info=1, entsize=24),
        _section(names[".dynamic"], 6, dynamic_offset, len(dyn_blob), link=1, entsize=16),
    ]
    if verneed:
        sections.append(
            _section(names[".gnu.version_r"], 0x6FFFFFFE, verneed_offset, len(verneed), link=1, info=len(files))
        )
    shstrndx = len(sections)
    sections.append(_section(names[".shstrtab"], 3, shstrtab_offset, len(shstrtab)))

    blobs = [
        (dynstr_offset, bytes(strtab)),
        (dynsym_offset, symtab),
        (verneed_offset, bytes(verneed)),
        (dynamic_offset, dyn_blob),
    ]
    if section_headers:
        shoff = _align(shstrtab_offset + len(shstrtab))
        blobs.extend([(shstrtab_offset, bytes(shstrtab)), (shoff, b"".join(sections))])
        end = shoff + 64 * len(sections)
        section_fields = (64, len(sections), shstrndx)
    else:
        shoff = 0
        end = dynamic_offset + len(dyn_blob)
        section_fields = (0, 0, 0)

    program_headers = struct.pack("<IIQQQQQQ", 1, 5, 0, 0, 0, end, end, 0x1000) + struct.pack(
        "<IIQQQQQQ", 2, 6, dynamic_offset, dynamic_offset, dynamic_offset, len(dyn_blob), len(dyn_blob), 8
    )
    header = (
        b"\x7fELF"
        + bytes([2, 1, 1, 0])
        + bytes(8)
        + struct.pack("<HHIQQQIHHH", elf_type, machine, 1, 0, 64, shoff, 0, 64, 56, 2)
        + struct.pack("<HHH", *section_fields)
    )

    image = bytearray(header + program_headers)
    for offset, blob in blobs:
        image.extend(bytes(offset - len(image)))
        image.extend(blob)
    return bytes(image)


def _section(
    name: int,
    kind: int,
    offset: int,
    size: int,
    *,
    link: int = 0,
    info: int = 0,
    entsize: int = 0,
) -> bytes:
    return struct.pack("<IIQQQQIIQQ", name, kind, 2, offset, offset, size, link, info, 8, entsize)


def macho_bytes(
    *,
    cputype: int = CPU_X86_64,
    filetype: int = MH_DYLIB,
    install_name: str | None = None,
    dylibs: Sequence[str] = (),
    rpaths: Sequence[str] = (),
    slack: int = 32,
) -> bytes:
    """A thin little-endian 64-bit Mach-O image; ``slack`` spare bytes follow every string."""
    commands: list[bytes] = []

    def string_command(fixed: bytes, fixed_size: int, value: str) -> bytes:
        payload = value.encode("utf-8") + b"\x00" + bytes(slack)
        size = _align(fixed_size + len(payload))
        command = bytearray(fixed + payload)
        command.extend(bytes(size - len(command)))
        struct.pack_into("<I", command, 4, size)
        return bytes(command)

    if install_name is not None:
        commands.append(string_command(struct.pack("<IIIIII", 0xD, 0, 24, 2, 0x10000, 0x10000), 24, install_name))
    for name in dylibs:
        commands.append(string_command(struct.pack("<IIIIII", 0xC, 0, 24, 2, 0x10000, 0x10000), 24, name))
    for path in rpaths:
        commands.append(string_command(struct.pack("<III", 0x8000001C, 0, 12), 12, path))

    body = b"".join(commands)
    header = struct.pack("<IiiIIIII", 0xFEEDFACF, cputype, 3, filetype, len(commands), len(body), 0, 0)
    return header + body


def fat_macho_bytes(slices: Sequence[tuple[int, bytes]]) -> bytes:
    """Wrap thin images into a universal file; ``slices`` pairs cputype with image bytes."""
    header = bytearray(struct.pack(">II", 0xCAFEBABE, len(slices)))
    offset = _align(8 + 20 * len(slices), 16)
    payload = bytearray()
    for cputype, image in slices:
        header.extend(struct.pack(">iiIII", cputype, 3, offset + len(payload), len(image), 4))
        payload.extend(image)
        payload.extend(bytes(_align(len(payload), 16) - len(payload)))
    header.extend(bytes(offset - len(header)))
    return bytes(header + payload)


def pe_bytes(*, machine: int = IMAGE_FILE_MACHINE_AMD64, imports: Sequence[str] = (), dll: bool = True) -> bytes:
    """A PE32+ image with one ``.idata`` section holding the import directory."""
    pe_offset = 0x80
    optional_size = 240
    section_table = pe_offset + 24 + optional_size
    raw_offset = 0x200
    virtual_address = 0x1000

    names_start = (len(imports) + 1) * 20
    names = bytearray()
    descriptors = []
    for name in imports:
        rva = virtual_address + names_start + len(names)
        names.extend(name.encode("ascii") + b"\x00")
        descriptors.append(struct.pack("<IIIII", 0, 0, 0, rva, rva))
    descriptors.append(bytes(20))
    idata = b"".join(descriptors) + bytes(names)

    image = bytearray(raw_offset + len(idata))
    image[0:2] = b"MZ"
    struct.pack_into("<I", image, 0x3C, pe_offset)
    image[pe_offset : pe_offset + 4] = b"PE\x00\x00"
    characteristics = 0x0002 | (0x2000 if dll else 0)
    struct.pack_into("<HHIIIHH", image, pe_offset + 4, machine, 1, 0, 0, 0, optional_size, characteristics)
    optional = pe_offset + 24
    struct.pack_into("<H", image, optional, 0x20B)
    struct.pack_into("<I", image, optional + 108, 16)
    if imports:
        struct.pack_into("<II", image, optional + 112 + 8, virtual_address, len(idata))
    image[section_table : section_table + 8] = b".idata\x00\x00"
    struct.pack_into("<IIII", image, section_table + 8, len(idata), virtual_address, len(idata), raw_offset)
    image[raw_offset:] = idata
    return bytes(image)


def _align(value: int, boundary: int = 8) -> int:
    return (value + boundary - 1) // boundary * boundary
