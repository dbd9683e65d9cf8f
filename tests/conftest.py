"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from binforge.dependencies import ArtifactSet
from binforge.packager import package
from binforge.platforms import Platform
from binforge.products import Product
from binforge.workspace import BuildWorkspace

ArtifactFactory = Callable[..., ArtifactSet]


@pytest.fixture
def linux64() -> Platform:
    return Platform.create("x86_64", "linux")


@pytest.fixture
def workspace(tmp_path: Path, linux64: Platform) -> BuildWorkspace:
    """A fresh attempt workspace for x86_64-linux-gnu."""
    return BuildWorkspace.create(tmp_path / "build", name="Pkg", platform=linux64)


@pytest.fixture
def make_artifact(tmp_path: Path) -> ArtifactFactory:
    """Package a small file tree into a prebuilt dependency artifact set."""

    def factory(
        name: str,
        platform: Platform,
        files: Mapping[str, bytes],
        products: Sequence[Product] = (),
        *,
        version: str = "1.0.0",
    ) -> ArtifactSet:
        tree = tmp_path / "artifact-trees" / f"{name}-{platform}"
        for relative, content in files.items():
            path = tree / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        tree.mkdir(parents=True, exist_ok=True)
        artifact = package(tree, name, platform, version=version, output_dir=tmp_path / "catalog" / name)
        return ArtifactSet(
            platform=platform,
            archive=artifact.archive_path,
            sha256=artifact.content_hash,
            products=tuple(products),
        )

    return factory
