"""Toolchain images and their selection by platform and compiler version."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from binforge.errors import RunFailed
from binforge.platforms import Platform, platforms_match

_GCC_TOOLS = {
    "CC": "gcc",
    "CXX": "g++",
    "FC": "gfortran",
    "LD": "ld",
    "AR": "ar",
    "NM": "nm",
    "RANLIB": "ranlib",
    "STRIP": "strip",
    "OBJCOPY": "objcopy",
    "OBJDUMP": "objdump",
}
_CLANG_TOOLS = {**_GCC_TOOLS, "CC": "clang", "CXX": "clang++"}
_HOST_TOOLS = {**_GCC_TOOLS, "CC": "cc", "CXX": "c++"}


@dataclass(frozen=True, slots=True)
class ToolchainImage:
    """An opaque execution image holding cross compilers for some platforms.

    ``rootfs`` is mounted read-only as ``/`` by sandboxing runners; ``bin_dirs``
    are prepended to ``PATH``; ``tools`` overrides the default alias table.
    """

    name: str
    platforms: tuple[Platform, ...]
    gcc_version: str | None = None
    rootfs: Path | None = None
    bin_dirs: tuple[str, ...] = ()
    tools: Mapping[str, str] = field(default_factory=dict)

    def supports(self, platform: Platform) -> bool:
        return any(platforms_match(candidate, platform) for candidate in self.platforms)

    def tool_aliases(self, platform: Platform) -> dict[str, str]:
        """Binary aliases bound to this image's executables for ``platform``."""
        aliases: dict[str, str] = {}
        if not platform.is_any:
            base = str(
                replace(platform, libgfortran_version=None, libstdcxx_version=None, cxxstring_abi=None, tags=())
            )
            table = _CLANG_TOOLS if platform.os in ("macos", "freebsd") else _GCC_TOOLS
            aliases = {alias: f"{base}-{tool}" for alias, tool in table.items()}
            if platform.is_windows:
                aliases["DLLTOOL"] = f"{base}-dlltool"
            if platform.is_apple:
                aliases["LIPO"] = f"{base}-lipo"
                aliases["INSTALL_NAME_TOOL"] = f"{base}-install_name_tool"
            if platform.os == "linux":
                aliases["PATCHELF"] = "patchelf"
        aliases.update(self.tools)
        return aliases


@dataclass(frozen=True, slots=True)
class ToolchainRegistry:
    images: tuple[ToolchainImage, ...]

    @classmethod
    def of(cls, images: Iterable[ToolchainImage]) -> ToolchainRegistry:
        return cls(images=tuple(images))

    @classmethod
    def host(cls, platform: Platform) -> ToolchainRegistry:
        """A registry whose only image is the build machine's own compilers."""
        return cls(images=(ToolchainImage(name="host", platforms=(platform,), tools=dict(_HOST_TOOLS)),))

    def select(self, platform: Platform, *, preferred_gcc_version: str | None = None) -> ToolchainImage:
        """Choose the image for ``platform``.

        Without a preference the oldest compiler wins. With one, the oldest
        compiler not older than the request wins, falling back to the newest.
        """
        candidates = [image for image in self.images if image.supports(platform)]
        if not candidates:
            raise RunFailed(
                "No toolchain image supports this platform.",
                hint="Register a toolchain image covering the target platform.",
                context={"platform": str(platform)},
            )
        candidates.sort(key=lambda image: (_version_key(image.gcc_version), image.name))
        if preferred_gcc_version is None:
            return candidates[0]
        wanted = _version_key(preferred_gcc_version)
        for image in candidates:
            if image.gcc_version is not None and _version_key(image.gcc_version) >= wanted:
                return image
        return candidates[-1]


def _version_key(version: str | None) -> tuple[int, ...]:
    if not version:
        return ()
    return tuple(int(part) for part in version.split(".") if part.isdigit())


__all__ = ["ToolchainImage", "ToolchainRegistry"]
