"""Platform enumeration: supported targets, host detection, and ABI-axis expansion."""

from __future__ import annotations

import platform as _host
import sys
from collections.abc import Callable, Iterable, Mapping
from typing import TypeVar

from binforge.errors import InvalidTriplet, ValidationError
from binforge.platforms.model import ARCH_ALIASES, Platform, platforms_match

T = TypeVar("T")

GFORTRAN_VERSIONS: tuple[str, ...] = ("3", "4", "5")
CXXSTRING_ABIS: tuple[str, ...] = ("cxx03", "cxx11")

# GCC-based toolchains are the only ones whose C++ string ABI varies.
_CXXSTRING_OSES = frozenset({"linux", "windows"})


def supported_platforms(*, exclude: Callable[[Platform], bool] | None = None) -> list[Platform]:
    platforms = [
        Platform.create("i686", "linux"),
        Platform.create("x86_64", "linux"),
        Platform.create("aarch64", "linux"),
        Platform.create("armv6l", "linux"),
        Platform.create("armv7l", "linux"),
        Platform.create("powerpc64le", "linux"),
        Platform.create("riscv64", "linux"),
        Platform.create("i686", "linux", libc="musl"),
        Platform.create("x86_64", "linux", libc="musl"),
        Platform.create("aarch64", "linux", libc="musl"),
        Platform.create("armv6l", "linux", libc="musl"),
        Platform.create("armv7l", "linux", libc="musl"),
        Platform.create("x86_64", "macos"),
        Platform.create("aarch64", "macos"),
        Platform.create("x86_64", "freebsd"),
        Platform.create("aarch64", "freebsd"),
        Platform.create("i686", "windows"),
        Platform.create("x86_64", "windows"),
    ]
    if exclude is None:
        return platforms
    return [p for p in platforms if not exclude(p)]


def host_platform() -> Platform:
    """Describe the machine this process runs on."""
    machine = _host.machine().lower()
    arch = ARCH_ALIASES.get(machine, machine)
    if sys.platform.startswith("linux"):
        libc_name, _ = _host.libc_ver()
        libc = "glibc" if libc_name == "glibc" else "musl"
        return Platform.create(arch, "linux", libc=libc)
    if sys.platform == "darwin":
        return Platform.create(arch, "macos")
    if sys.platform.startswith("freebsd"):
        return Platform.create(arch, "freebsd")
    if sys.platform in ("win32", "cygwin"):
        return Platform.create(arch, "windows")
    raise InvalidTriplet(
        "Unable to describe the host platform.",
        context={"sys.platform": sys.platform, "machine": machine},
    )


def expand_gfortran_versions(platforms: Platform | Iterable[Platform]) -> list[Platform]:
    """Split each platform without a libgfortran constraint into one shard per version."""
    expanded: list[Platform] = []
    for p in _as_list(platforms):
        if p.is_any or p.libgfortran_version is not None:
            expanded.append(p)
            continue
        expanded.extend(p.with_tags(libgfortran_version=v) for v in GFORTRAN_VERSIONS)
    return expanded


def expand_cxxstring_abis(platforms: Platform | Iterable[Platform]) -> list[Platform]:
    """Split GCC-toolchain platforms into cxx03/cxx11 string-ABI shards."""
    expanded: list[Platform] = []
    for p in _as_list(platforms):
        if p.is_any or p.cxxstring_abi is not None or p.os not in _CXXSTRING_OSES:
            expanded.append(p)
            continue
        expanded.extend(p.with_tags(cxxstring_abi=abi) for abi in CXXSTRING_ABIS)
    return expanded


EXPANSION_AXES: dict[str, Callable[[Platform | Iterable[Platform]], list[Platform]]] = {
    "libgfortran_version": expand_gfortran_versions,
    "cxxstring_abi": expand_cxxstring_abis,
}


def expand(base: Platform | Iterable[Platform], axis: str) -> list[Platform]:
    expander = EXPANSION_AXES.get(axis)
    if expander is None:
        raise ValidationError(
            f"Unknown expansion axis `{axis}`.",
            context={"supported": ", ".join(sorted(EXPANSION_AXES))},
        )
    return expander(base)


def select_platform(mapping: Mapping[Platform, T], platform: Platform) -> T | None:
    """Pick the value whose platform key best matches ``platform``.

    Exact keys win; otherwise the most specific compatible key is chosen, with
    ties broken by canonical triplet so the choice is deterministic.
    """
    if platform in mapping:
        return mapping[platform]
    candidates = [key for key in mapping if platforms_match(key, platform)]
    if not candidates:
        return None
    candidates.sort(key=lambda key: (-_specificity(key), str(key)))
    return mapping[candidates[0]]


def _specificity(p: Platform) -> int:
    if p.is_any:
        return -1
    return sum(
        value is not None
        for value in (p.libgfortran_version, p.libstdcxx_version, p.cxxstring_abi)
    ) + len(p.tags)


def _as_list(platforms: Platform | Iterable[Platform]) -> list[Platform]:
    if isinstance(platforms, Platform):
        return [platforms]
    return list(platforms)


__all__ = [
    "CXXSTRING_ABIS",
    "EXPANSION_AXES",
    "GFORTRAN_VERSIONS",
    "expand",
    "expand_cxxstring_abis",
    "expand_gfortran_versions",
    "host_platform",
    "select_platform",
    "supported_platforms",
]
