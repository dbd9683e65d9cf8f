"""Declarative build products and platform-aware location inside a prefix."""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from binforge.errors import ValidationError
from binforge.platforms import Platform

_VERSION_SPLIT = re.compile(r"[.\-]")


def bindirs(platform: Platform) -> tuple[str, ...]:
    return ("bin",)


def libdirs(platform: Platform) -> tuple[str, ...]:
    if platform.is_windows:
        return ("bin", "lib")
    return ("lib", "lib64")


@dataclass(frozen=True, slots=True)
class LibraryProduct:
    """A shared library; ``names`` lists acceptable base names in priority order."""

    names: tuple[str, ...]
    variable: str

    def __init__(self, names: str | Sequence[str], variable: str) -> None:
        object.__setattr__(self, "names", (names,) if isinstance(names, str) else tuple(names))
        object.__setattr__(self, "variable", variable)
        _validate(self, self.names)

    platform_independent = False

    def locate(self, prefix: Path, platform: Platform) -> Path | None:
        _require_concrete(self, platform)
        root = Path(prefix)
        for libdir in libdirs(platform):
            directory = root / libdir
            if not directory.is_dir():
                continue
            for name in self.names:
                found = _best_library_match(directory, name, platform)
                if found is not None and _inside(found, root):
                    return found
        return None

    def describe(self) -> str:
        return f"LibraryProduct({', '.join(self.names)})"


@dataclass(frozen=True, slots=True)
class ExecutableProduct:
    name: str
    variable: str

    def __post_init__(self) -> None:
        _validate(self, (self.name,))

    platform_independent = False

    def locate(self, prefix: Path, platform: Platform) -> Path | None:
        _require_concrete(self, platform)
        root = Path(prefix)
        for bindir in bindirs(platform):
            candidate = root / bindir / f"{self.name}{platform.exe_ext}"
            resolved = _regular_file(candidate)
            if resolved is not None and _inside(resolved, root):
                return candidate
        return None

    def describe(self) -> str:
        return f"ExecutableProduct({self.name})"


@dataclass(frozen=True, slots=True)
class FrameworkProduct:
    """An Apple framework bundle; elsewhere the same code ships as a plain library."""

    name: str
    variable: str
    library_name: str | None = None

    def __post_init__(self) -> None:
        _validate(self, (self.name,))

    platform_independent = False

    def locate(self, prefix: Path, platform: Platform) -> Path | None:
        _require_concrete(self, platform)
        root = Path(prefix)
        if not platform.is_apple:
            library = LibraryProduct(self.library_name or self.name, self.variable)
            return library.locate(root, platform)
        for directory in ("lib", "Frameworks"):
            bundle = root / directory / f"{self.name}.framework"
            if not bundle.is_dir():
                continue
            for binary in (bundle / self.name, bundle / "Versions" / "Current" / self.name):
                resolved = _regular_file(binary)
                if resolved is not None and _inside(resolved, root):
                    return bundle
        return None

    def describe(self) -> str:
        return f"FrameworkProduct({self.name})"


@dataclass(frozen=True, slots=True)
class FileProduct:
    path: str
    variable: str

    def __post_init__(self) -> None:
        relative = PurePosixPath(self.path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValidationError(
                "FileProduct paths must be relative to the prefix.",
                context={"path": self.path},
            )
        _validate(self, (self.path,))

    platform_independent = True

    def locate(self, prefix: Path, platform: Platform) -> Path | None:
        candidate = Path(prefix) / self.path
        return candidate if candidate.exists() else None

    def describe(self) -> str:
        return f"FileProduct({self.path})"


Product = LibraryProduct | ExecutableProduct | FrameworkProduct | FileProduct


def locate_products(
    products: Iterable[Product],
    prefix: Path,
    platform: Platform,
) -> tuple[dict[Product, Path], list[Product]]:
    """Locate every product; returns found paths and the full list of missing products."""
    found: dict[Product, Path] = {}
    missing: list[Product] = []
    for product in products:
        path = product.locate(prefix, platform)
        if path is None:
            missing.append(product)
        else:
            found[product] = path
    return found, missing


def _best_library_match(directory: Path, name: str, platform: Platform) -> Path | None:
    """Unversioned files win; otherwise the highest version suffix wins."""
    pattern = _library_pattern(name, platform)
    candidates: list[tuple[tuple[int, ...], str, Path]] = []
    for entry in sorted(directory.iterdir()):
        match = pattern.fullmatch(entry.name)
        if match is None:
            continue
        resolved = _regular_file(entry)
        if resolved is None:
            continue
        version = match.group("version") or ""
        candidates.append((_version_key(version), entry.name, resolved))
    if not candidates:
        return None
    unversioned = [c for c in candidates if not c[0]]
    if unversioned:
        return unversioned[0][2]
    candidates.sort(key=lambda c: (c[0], c[1]), reverse=True)
    return candidates[0][2]


def _library_pattern(name: str, platform: Platform) -> re.Pattern[str]:
    stems = {name}
    if platform.is_windows and name.startswith("lib"):
        stems.add(name[3:])
    elif not name.startswith("lib"):
        stems.add(f"lib{name}")
    alternatives = "|".join(re.escape(stem) for stem in sorted(stems))
    if platform.is_windows:
        return re.compile(rf"(?:{alternatives})(?:-(?P<version>[0-9][0-9.]*))?\.dll", re.IGNORECASE)
    if platform.is_apple:
        return re.compile(rf"(?:{alternatives})(?:\.(?P<version>[0-9][0-9.]*))?\.dylib")
    return re.compile(rf"(?:{alternatives})\.so(?:\.(?P<version>[0-9][0-9.]*))?")


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in _VERSION_SPLIT.split(version) if part.isdigit())


def _regular_file(path: Path) -> Path | None:
    try:
        resolved = path.resolve(strict=True)
    except (FileNotFoundError, RuntimeError):
        return None
    return resolved if resolved.is_file() else None


def _inside(path: Path, root: Path) -> bool:
    return path.resolve().is_relative_to(root.resolve())


def _validate(product: object, names: Sequence[str]) -> None:
    variable = getattr(product, "variable")
    if not names or not all(names):
        raise ValidationError(f"{type(product).__name__} requires a non-empty name.")
    if not variable.isidentifier():
        raise ValidationError(
            f"{type(product).__name__} variable must be a valid identifier.",
            context={"variable": variable},
        )


def _require_concrete(product: object, platform: Platform) -> None:
    if platform.is_any:
        raise ValidationError(
            f"{type(product).__name__} cannot be located for the `any` platform.",
            hint="Only FileProduct is platform independent.",
        )


__all__ = [
    "ExecutableProduct",
    "FileProduct",
    "FrameworkProduct",
    "LibraryProduct",
    "Product",
    "bindirs",
    "libdirs",
    "locate_products",
]
