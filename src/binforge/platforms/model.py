"""Target platform value objects and canonical triplet (de)serialization.

A triplet is ``<arch>-<vendor/os>-<libc/abi>`` followed by zero or more ABI tags::

    x86_64-linux-gnu
    armv7l-linux-musleabihf
    aarch64-apple-darwin-libgfortran5
    x86_64-w64-mingw32-libgfortran4-cxx11
    x86_64-linux-gnu-libstdcxx30-cuda+11.8

The special string ``any`` denotes :data:`ANY_PLATFORM`, which matches every
concrete platform and may only carry architecture-independent output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Literal

from binforge.errors import InvalidTriplet

Arch = Literal["x86_64", "i686", "aarch64", "armv6l", "armv7l", "powerpc64le", "riscv64", "any"]
OS = Literal["linux", "macos", "windows", "freebsd", "any"]
Libc = Literal["glibc", "musl"]
CallABI = Literal["eabihf"]
CxxStringABI = Literal["cxx03", "cxx11"]

ARCHITECTURES: tuple[str, ...] = (
    "x86_64",
    "i686",
    "aarch64",
    "armv6l",
    "armv7l",
    "powerpc64le",
    "riscv64",
)
OPERATING_SYSTEMS: tuple[str, ...] = ("linux", "macos", "windows", "freebsd")

ARCH_ALIASES: dict[str, str] = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "i686",
    "i486": "i686",
    "i586": "i686",
    "x86": "i686",
    "arm64": "aarch64",
    "armv7": "armv7l",
    "armv6": "armv6l",
    "ppc64le": "powerpc64le",
}

_ARM_HARD_FLOAT = frozenset({"armv6l", "armv7l"})
_GFORTRAN_TAG = re.compile(r"^libgfortran(\d+)$")
_LIBSTDCXX_TAG = re.compile(r"^libstdcxx(\d+)$")
_CUSTOM_TAG = re.compile(r"^([a-z][a-z0-9_]*)\+([A-Za-z0-9_.]+)$")
_VERSION_NUMBER = re.compile(r"^\d+$")
_DARWIN = re.compile(r"^darwin[0-9.]*$")
_FREEBSD = re.compile(r"^freebsd[0-9.]*$")


@dataclass(frozen=True, slots=True)
class Platform:
    """Immutable description of one build target.

    ``libgfortran_version`` holds the libgfortran SONAME major (``"3"``, ``"4"``,
    ``"5"``); ``libstdcxx_version`` holds the GLIBCXX minor (``"26"`` for 3.4.26);
    ``tags`` are free-form ``key=value`` pairs for non-standard targets, kept sorted.
    """

    arch: Arch
    os: OS
    libc: Libc | None = None
    call_abi: CallABI | None = None
    libgfortran_version: str | None = None
    libstdcxx_version: str | None = None
    cxxstring_abi: CxxStringABI | None = None
    tags: tuple[tuple[str, str], ...] = field(default=())

    def __post_init__(self) -> None:
        if self.arch == "any" or self.os == "any":
            if (self.arch, self.os) != ("any", "any") or self._has_constraints():
                raise InvalidTriplet("The `any` platform cannot carry other fields.")
            return
        if self.arch not in ARCHITECTURES:
            raise InvalidTriplet(
                f"Unknown architecture `{self.arch}`.",
                context={"supported": ", ".join(ARCHITECTURES)},
            )
        if self.os not in OPERATING_SYSTEMS:
            raise InvalidTriplet(
                f"Unknown operating system `{self.os}`.",
                context={"supported": ", ".join(OPERATING_SYSTEMS)},
            )
        if self.os == "linux":
            if self.libc not in ("glibc", "musl"):
                raise InvalidTriplet(
                    "Linux platforms require a libc of `glibc` or `musl`.",
                    context={"arch": self.arch, "libc": str(self.libc)},
                )
        elif self.libc is not None:
            raise InvalidTriplet(f"`{self.os}` platforms do not take a libc variant.")
        expected_abi = "eabihf" if self.os == "linux" and self.arch in _ARM_HARD_FLOAT else None
        if self.call_abi != expected_abi:
            raise InvalidTriplet(
                "Call ABI does not fit architecture/OS.",
                hint="32-bit ARM Linux requires `eabihf`; every other target takes none.",
                context={"arch": self.arch, "os": self.os, "call_abi": str(self.call_abi)},
            )
        if self.cxxstring_abi not in (None, "cxx03", "cxx11"):
            raise InvalidTriplet(f"Unknown C++ string ABI `{self.cxxstring_abi}`.")
        for label, version in (
            ("libgfortran_version", self.libgfortran_version),
            ("libstdcxx_version", self.libstdcxx_version),
        ):
            if version is not None and not _VERSION_NUMBER.fullmatch(version):
                raise InvalidTriplet(
                    f"`{label}` must be a plain number.",
                    context={label: str(version)},
                )
        for key, value in self.tags:
            if not _CUSTOM_TAG.fullmatch(f"{key}+{value}"):
                raise InvalidTriplet(
                    f"Invalid platform tag `{key}={value}`.",
                    hint="Tag keys are lowercase identifiers; values use letters, digits, `_` and `.`.",
                    context={"key": key, "value": value},
                )
        if list(self.tags) != sorted(self.tags) or len({k for k, _ in self.tags}) != len(self.tags):
            raise InvalidTriplet("Platform tags must be unique and sorted by key.")

    @classmethod
    def any(cls) -> Platform:
        return cls(arch="any", os="any")

    @classmethod
    def create(
        cls,
        arch: str,
        os: str,
        *,
        libc: str | None = None,
        call_abi: str | None = None,
        libgfortran_version: str | None = None,
        libstdcxx_version: str | None = None,
        cxxstring_abi: str | None = None,
        **tags: str,
    ) -> Platform:
        """Build a platform filling in the OS defaults (glibc, ARM hard-float)."""
        arch = ARCH_ALIASES.get(arch, arch)
        if os == "linux" and libc is None:
            libc = "glibc"
        if call_abi is None and os == "linux" and arch in _ARM_HARD_FLOAT:
            call_abi = "eabihf"
        return cls(
            arch=arch,  # type: ignore[arg-type]
            os=os,  # type: ignore[arg-type]
            libc=libc,  # type: ignore[arg-type]
            call_abi=call_abi,  # type: ignore[arg-type]
            libgfortran_version=libgfortran_version,
            libstdcxx_version=libstdcxx_version,
            cxxstring_abi=cxxstring_abi,  # type: ignore[arg-type]
            tags=tuple(sorted(tags.items())),
        )

    @property
    def is_any(self) -> bool:
        return self.arch == "any"

    @property
    def is_apple(self) -> bool:
        return self.os == "macos"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def is_unix(self) -> bool:
        return self.os in ("linux", "macos", "freebsd")

    @property
    def exe_ext(self) -> str:
        return ".exe" if self.is_windows else ""

    @property
    def dl_ext(self) -> str:
        if self.is_windows:
            return "dll"
        if self.is_apple:
            return "dylib"
        return "so"

    def with_tags(self, **changes: str | None) -> Platform:
        """Return a copy with ABI sub-versions replaced."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def triplet(self) -> str:
        return canonical_triplet(self)

    def __str__(self) -> str:
        return canonical_triplet(self)

    def _has_constraints(self) -> bool:
        return any(
            (
                self.libc,
                self.call_abi,
                self.libgfortran_version,
                self.libstdcxx_version,
                self.cxxstring_abi,
                self.tags,
            )
        )


ANY_PLATFORM = Platform.any()


def canonical_triplet(platform: Platform) -> str:
    if platform.is_any:
        return "any"
    if platform.os == "linux":
        libc = "gnu" if platform.libc == "glibc" else "musl"
        base = f"{platform.arch}-linux-{libc}{platform.call_abi or ''}"
    elif platform.os == "macos":
        base = f"{platform.arch}-apple-darwin"
    elif platform.os == "windows":
        base = f"{platform.arch}-w64-mingw32"
    else:
        base = f"{platform.arch}-unknown-freebsd"

    parts = [base]
    if platform.libgfortran_version is not None:
        parts.append(f"libgfortran{platform.libgfortran_version}")
    if platform.libstdcxx_version is not None:
        parts.append(f"libstdcxx{platform.libstdcxx_version}")
    if platform.cxxstring_abi is not None:
        parts.append(platform.cxxstring_abi)
    parts.extend(f"{key}+{value}" for key, value in platform.tags)
    return "-".join(parts)


def parse_triplet(triplet: str) -> Platform:
    """Parse a triplet string; accepts common vendor spellings besides the canonical one."""
    text = triplet.strip()
    if text == "any":
        return ANY_PLATFORM
    tokens = text.split("-")
    if len(tokens) < 2 or not all(tokens):
        raise InvalidTriplet(f"Malformed triplet `{triplet}`.", context={"triplet": triplet})

    arch = ARCH_ALIASES.get(tokens[0], tokens[0])
    if arch not in ARCHITECTURES:
        raise InvalidTriplet(
            f"Unrecognized architecture `{tokens[0]}`.",
            context={"triplet": triplet},
        )

    rest = tokens[1:]
    if rest[0] in ("pc", "unknown") and len(rest) > 1 and rest[1] == "linux":
        rest = rest[1:]
    os_name, libc, call_abi, consumed = _parse_os_tokens(rest, triplet)
    tag_tokens = rest[consumed:]

    libgfortran: str | None = None
    libstdcxx: str | None = None
    cxxstring: str | None = None
    custom: dict[str, str] = {}
    for token in tag_tokens:
        if match := _GFORTRAN_TAG.fullmatch(token):
            libgfortran = match.group(1)
        elif match := _LIBSTDCXX_TAG.fullmatch(token):
            libstdcxx = match.group(1)
        elif token in ("cxx03", "cxx11"):
            cxxstring = token
        elif match := _CUSTOM_TAG.fullmatch(token):
            custom[match.group(1)] = match.group(2)
        else:
            raise InvalidTriplet(
                f"Unrecognized platform tag `{token}`.",
                context={"triplet": triplet},
            )

    return Platform(
        arch=arch,  # type: ignore[arg-type]
        os=os_name,  # type: ignore[arg-type]
        libc=libc,  # type: ignore[arg-type]
        call_abi=call_abi,  # type: ignore[arg-type]
        libgfortran_version=libgfortran,
        libstdcxx_version=libstdcxx,
        cxxstring_abi=cxxstring,  # type: ignore[arg-type]
        tags=tuple(sorted(custom.items())),
    )


def _parse_os_tokens(rest: list[str], triplet: str) -> tuple[str, str | None, str | None, int]:
    head = rest[0]
    if head == "linux":
        if len(rest) < 2:
            raise InvalidTriplet("Linux triplets require a libc token.", context={"triplet": triplet})
        libc_token = rest[1]
        call_abi = None
        if libc_token.endswith("eabihf"):
            call_abi = "eabihf"
            libc_token = libc_token[: -len("eabihf")]
        if libc_token == "gnu":
            return "linux", "glibc", call_abi, 2
        if libc_token == "musl":
            return "linux", "musl", call_abi, 2
        raise InvalidTriplet(f"Unrecognized libc `{rest[1]}`.", context={"triplet": triplet})
    if head == "apple" and len(rest) > 1 and _DARWIN.fullmatch(rest[1]):
        return "macos", None, None, 2
    if head in ("w64", "pc") and len(rest) > 1 and rest[1] == "mingw32":
        return "windows", None, None, 2
    if head == "unknown" and len(rest) > 1 and _FREEBSD.fullmatch(rest[1]):
        return "freebsd", None, None, 2
    if _FREEBSD.fullmatch(head):
        return "freebsd", None, None, 1
    raise InvalidTriplet(f"Unrecognized operating system in `{triplet}`.", context={"triplet": triplet})


def platforms_match(a: Platform, b: Platform) -> bool:
    """Compatibility: required fields equal, optional ABI fields equal or unset on one side."""
    if a.is_any or b.is_any:
        return True
    if (a.arch, a.os, a.libc, a.call_abi) != (b.arch, b.os, b.libc, b.call_abi):
        return False
    for left, right in (
        (a.libgfortran_version, b.libgfortran_version),
        (a.libstdcxx_version, b.libstdcxx_version),
        (a.cxxstring_abi, b.cxxstring_abi),
    ):
        if left is not None and right is not None and left != right:
            return False
    a_tags, b_tags = dict(a.tags), dict(b.tags)
    for key in a_tags.keys() & b_tags.keys():
        if a_tags[key] != b_tags[key]:
            return False
    return True


__all__ = [
    "ANY_PLATFORM",
    "ARCHITECTURES",
    "Arch",
    "CallABI",
    "CxxStringABI",
    "Libc",
    "OPERATING_SYSTEMS",
    "OS",
    "Platform",
    "canonical_triplet",
    "parse_triplet",
    "platforms_match",
]
