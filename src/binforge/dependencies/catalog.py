"""Dependency requests and catalogs of prebuilt artifact sets.

A catalog maps a package name to a provider; the provider lists the platforms
it has prebuilt artifacts for and hands out the best :class:`ArtifactSet` for a
requested platform. Catalogs are read-only during a build run and are shared by
every worker.

On disk, :class:`DirectoryCatalog` expects one directory per package::

    <root>/<name>/catalog.json
    <root>/<name>/<archive>.tar.gz

with ``catalog.json`` shaped like::

    {
      "name": "Zlib",
      "artifacts": [
        {
          "triplet": "x86_64-linux-gnu",
          "archive": "Zlib.v1.3.1.x86_64-linux-gnu.tar.gz",
          "sha256": "...",
          "products": [{"kind": "library", "names": ["libz"], "variable": "libz"}]
        }
      ]
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from binforge.errors import ConfigError, InvalidTriplet, ValidationError
from binforge.platforms import Platform, parse_triplet, select_platform
from binforge.products import (
    ExecutableProduct,
    FileProduct,
    FrameworkProduct,
    LibraryProduct,
    Product,
)

Scope = Literal["target", "host"]


@dataclass(frozen=True, slots=True)
class Dependency:
    """A request for a prebuilt package.

    ``scope="target"`` artifacts are built for the target platform and may be
    linked into the output; ``scope="host"`` artifacts run on the build machine.
    """

    name: str
    scope: Scope = "target"

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Dependency name must not be empty.")
        if self.scope not in ("target", "host"):
            raise ValidationError(
                f"Unknown dependency scope `{self.scope}`.",
                context={"name": self.name},
            )

    @classmethod
    def host(cls, name: str) -> Dependency:
        return cls(name=name, scope="host")


@dataclass(frozen=True, slots=True)
class ArtifactSet:
    platform: Platform
    archive: Path
    sha256: str
    products: tuple[Product, ...] = ()


class ArtifactProvider(Protocol):
    def platforms(self) -> tuple[Platform, ...]: ...

    def artifacts_for(self, platform: Platform) -> ArtifactSet | None: ...


class DependencyCatalog(Protocol):
    def lookup(self, name: str) -> ArtifactProvider | None: ...


@dataclass(frozen=True, slots=True)
class StaticProvider:
    artifacts: tuple[ArtifactSet, ...]

    def platforms(self) -> tuple[Platform, ...]:
        return tuple(artifact.platform for artifact in self.artifacts)

    def artifacts_for(self, platform: Platform) -> ArtifactSet | None:
        return select_platform({artifact.platform: artifact for artifact in self.artifacts}, platform)


@dataclass(frozen=True, slots=True)
class InMemoryCatalog:
    packages: Mapping[str, StaticProvider] = field(default_factory=dict)

    @classmethod
    def from_artifacts(cls, packages: Mapping[str, Iterable[ArtifactSet]]) -> InMemoryCatalog:
        return cls(packages={name: StaticProvider(tuple(sets)) for name, sets in packages.items()})

    def lookup(self, name: str) -> StaticProvider | None:
        return self.packages.get(name)


@dataclass(frozen=True, slots=True)
class DirectoryCatalog:
    root: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root))

    def lookup(self, name: str) -> StaticProvider | None:
        if not name or "/" in name or name in (".", ".."):
            return None
        manifest = self.root / name / "catalog.json"
        if not manifest.is_file():
            return None
        return parse_catalog(manifest.read_text(encoding="utf-8"), base_dir=manifest.parent)

    def names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.parent.name for p in self.root.glob("*/catalog.json"))


def parse_catalog(raw: str, *, base_dir: Path) -> StaticProvider:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError("Invalid catalog JSON.", hint=str(exc)) from exc
    if not isinstance(payload, dict):
        raise ConfigError("Invalid catalog payload type.")
    _required_str(payload, "name")
    entries = payload.get("artifacts")
    if not isinstance(entries, list):
        raise ConfigError("Invalid catalog `artifacts` value.")
    return StaticProvider(tuple(_parse_artifact(entry, base_dir) for entry in entries))


def _parse_artifact(item: Any, base_dir: Path) -> ArtifactSet:
    if not isinstance(item, dict):
        raise ConfigError("Invalid artifact entry in catalog.")
    triplet = _required_str(item, "triplet")
    try:
        platform = parse_triplet(triplet)
    except InvalidTriplet as exc:
        raise ConfigError("Invalid catalog `triplet` value.", context={"triplet": triplet}) from exc
    products_raw = item.get("products", [])
    if not isinstance(products_raw, list):
        raise ConfigError("Invalid catalog `products` value.")
    return ArtifactSet(
        platform=platform,
        archive=base_dir / _required_str(item, "archive"),
        sha256=_required_str(item, "sha256").lower(),
        products=tuple(_parse_product(product) for product in products_raw),
    )


def _parse_product(item: Any) -> Product:
    if not isinstance(item, dict):
        raise ConfigError("Invalid product entry in catalog.")
    kind = _required_str(item, "kind")
    variable = _required_str(item, "variable")
    try:
        if kind == "library":
            return LibraryProduct(_required_str_list(item, "names"), variable)
        if kind == "executable":
            return ExecutableProduct(_required_str(item, "name"), variable)
        if kind == "framework":
            return FrameworkProduct(_required_str(item, "name"), variable)
        if kind == "file":
            return FileProduct(_required_str(item, "path"), variable)
    except ValidationError as exc:
        raise ConfigError("Invalid catalog product.", hint=str(exc)) from exc
    raise ConfigError(f"Unknown catalog product kind `{kind}`.")


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Invalid catalog `{key}` value.")
    return value


def _required_str_list(payload: dict[str, Any], key: str) -> Sequence[str]:
    value = payload.get(key)
    if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"Invalid catalog `{key}` value.")
    return value


__all__ = [
    "ArtifactProvider",
    "ArtifactSet",
    "Dependency",
    "DependencyCatalog",
    "DirectoryCatalog",
    "InMemoryCatalog",
    "StaticProvider",
    "parse_catalog",
]
