import json
from collections.abc import Callable
from pathlib import Path

import pytest

from binforge.dependencies import (
    ArtifactSet,
    Dependency,
    DependencyResolver,
    DirectoryCatalog,
    InMemoryCatalog,
    UnresolvedDependencyWarning,
)
from binforge.dependencies.catalog import parse_catalog
from binforge.errors import ConfigError, UnsatisfiedDependencies, ValidationError
from binforge.observability import StructuredLogger
from binforge.platforms import Platform, parse_triplet
from binforge.products import ExecutableProduct, LibraryProduct
from binforge.workspace import BuildWorkspace

AARCH64 = parse_triplet("aarch64-linux-gnu")

ArtifactFactory = Callable[..., ArtifactSet]


def test_target_dependency_is_staged_with_product_hints(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    zlib = make_artifact(
        "Zlib",
        linux64,
        {"lib/libz.so.1.3": b"zlib", "include/zlib.h": b"/* zlib */"},
        [LibraryProduct("libz", "libz")],
    )
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Zlib": [zlib]}), native_platform=linux64)

    resolved = resolver.resolve([Dependency("Zlib")], linux64, workspace=workspace)

    (artifact,) = resolved.target
    assert artifact.root == workspace.target_deps_root
    assert artifact.files == ("include/zlib.h", "lib/libz.so.1.3")
    assert (workspace.target_deps_root / "include" / "zlib.h").is_file()
    assert resolved.environment() == {"DEP_LIBZ": str(workspace.target_deps_root / "lib" / "libz.so.1.3")}
    assert resolved.provided_files() == frozenset({"zlib.h", "libz.so.1.3"})
    assert resolved.to_dict()["target"] == [
        {"name": "Zlib", "platform": "x86_64-linux-gnu", "sha256": zlib.sha256, "products": ["libz"]}
    ]


def test_host_dependency_uses_native_platform(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    native = make_artifact("CMake", linux64, {"bin/cmake": b"native"}, [ExecutableProduct("cmake", "cmake")])
    cross = make_artifact("CMake", AARCH64, {"bin/cmake": b"cross"})
    resolver = DependencyResolver(
        InMemoryCatalog.from_artifacts({"CMake": [cross, native]}),
        native_platform=linux64,
    )

    resolved = resolver.resolve([Dependency.host("CMake")], AARCH64, workspace=workspace)

    assert resolved.target == ()
    assert resolved.host[0].platform == linux64
    assert (workspace.host_deps_root / "bin" / "cmake").read_bytes() == b"native"
    assert resolved.environment() == {"HOST_CMAKE": str(workspace.host_deps_root / "bin" / "cmake")}


def test_host_dependency_without_native_artifact(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    cross = make_artifact("Protoc", AARCH64, {"bin/protoc": b"cross"})
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Protoc": [cross]}), native_platform=linux64)

    with pytest.warns(UnresolvedDependencyWarning, match="native platform x86_64-linux-gnu"):
        with pytest.raises(UnsatisfiedDependencies) as excinfo:
            resolver.resolve([Dependency.host("Protoc")], AARCH64, workspace=workspace)

    assert excinfo.value.missing == ("Protoc",)


def test_every_request_is_attempted_before_failing(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    zlib = make_artifact("Zlib", linux64, {"lib/libz.so": b"zlib"})
    logger = StructuredLogger()
    resolver = DependencyResolver(
        InMemoryCatalog.from_artifacts({"Zlib": [zlib]}),
        native_platform=linux64,
        logger=logger,
    )

    with pytest.warns(UnresolvedDependencyWarning) as caught:
        with pytest.raises(UnsatisfiedDependencies) as excinfo:
            resolver.resolve(
                [Dependency("Nope"), Dependency("Zlib"), Dependency("Gone")],
                linux64,
                workspace=workspace,
            )

    assert excinfo.value.missing == ("Nope", "Gone")
    assert "unknown package" in excinfo.value.context["details"]
    assert len([w for w in caught if w.category is UnresolvedDependencyWarning]) == 2
    assert (workspace.target_deps_root / "lib" / "libz.so").is_file()
    assert [r["level"] for r in logger.records] == ["info", "warning", "warning"]


def test_missing_platform_lists_available_platforms(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    zlib = make_artifact("Zlib", linux64, {"lib/libz.so": b"zlib"})
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Zlib": [zlib]}), native_platform=linux64)

    with pytest.warns(UnresolvedDependencyWarning, match=r"available: x86_64-linux-gnu"):
        with pytest.raises(UnsatisfiedDependencies):
            resolver.resolve([Dependency("Zlib")], AARCH64, workspace=workspace)


def test_corrupt_dependency_archive_is_not_installed(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    good = make_artifact("Zlib", linux64, {"lib/libz.so": b"zlib"})
    tampered = ArtifactSet(platform=linux64, archive=good.archive, sha256="0" * 64)
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Zlib": [tampered]}), native_platform=linux64)

    with pytest.warns(UnresolvedDependencyWarning, match="does not match"):
        with pytest.raises(UnsatisfiedDependencies):
            resolver.resolve([Dependency("Zlib")], linux64, workspace=workspace)

    assert list(workspace.target_deps_root.iterdir()) == []


def test_missing_dependency_archive(workspace: BuildWorkspace, linux64: Platform, tmp_path: Path) -> None:
    absent = ArtifactSet(platform=linux64, archive=tmp_path / "absent.tar.gz", sha256="0" * 64)
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Zlib": [absent]}), native_platform=linux64)

    with pytest.warns(UnresolvedDependencyWarning, match="archive is missing"):
        with pytest.raises(UnsatisfiedDependencies):
            resolver.resolve([Dependency("Zlib")], linux64, workspace=workspace)


def test_conflicting_files_are_reported(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    first = make_artifact("OpenSSL", linux64, {"lib/libcrypto.so": b"openssl"})
    second = make_artifact("LibreSSL", linux64, {"lib/libcrypto.so": b"libressl"})
    resolver = DependencyResolver(
        InMemoryCatalog.from_artifacts({"OpenSSL": [first], "LibreSSL": [second]}),
        native_platform=linux64,
    )

    with pytest.warns(UnresolvedDependencyWarning, match="already provided by `OpenSSL`"):
        with pytest.raises(UnsatisfiedDependencies) as excinfo:
            resolver.resolve([Dependency("OpenSSL"), Dependency("LibreSSL")], linux64, workspace=workspace)

    assert excinfo.value.missing == ("LibreSSL",)
    assert (workspace.target_deps_root / "lib" / "libcrypto.so").read_bytes() == b"openssl"


def test_duplicate_requests_are_staged_once(
    workspace: BuildWorkspace, linux64: Platform, make_artifact: ArtifactFactory
) -> None:
    zlib = make_artifact("Zlib", linux64, {"lib/libz.so": b"zlib"})
    resolver = DependencyResolver(InMemoryCatalog.from_artifacts({"Zlib": [zlib]}), native_platform=linux64)

    resolved = resolver.resolve([Dependency("Zlib"), Dependency("Zlib")], linux64, workspace=workspace)

    assert len(resolved.target) == 1


def test_dependency_validation() -> None:
    with pytest.raises(ValidationError):
        Dependency("")
    with pytest.raises(ValidationError):
        Dependency("Zlib", scope="build")  # type: ignore[arg-type]


def test_directory_catalog(tmp_path: Path, linux64: Platform, make_artifact: ArtifactFactory) -> None:
    artifact = make_artifact("Zlib", linux64, {"lib/libz.so": b"zlib"})
    root = tmp_path / "catalog"
    (root / "Zlib" / "catalog.json").write_text(
        json.dumps(
            {
                "name": "Zlib",
                "artifacts": [
                    {
                        "triplet": "x86_64-linux-gnu",
                        "archive": artifact.archive.name,
                        "sha256": artifact.sha256.upper(),
                        "products": [{"kind": "library", "names": ["libz"], "variable": "libz"}],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    catalog = DirectoryCatalog(root)

    provider = catalog.lookup("Zlib")

    assert catalog.names() == ["Zlib"]
    assert catalog.lookup("Missing") is None
    assert catalog.lookup("../Zlib") is None
    assert provider is not None
    selected = provider.artifacts_for(parse_triplet("x86_64-linux-gnu-cxx11"))
    assert selected is not None
    assert selected.archive == artifact.archive
    assert selected.sha256 == artifact.sha256
    assert selected.products == (LibraryProduct("libz", "libz"),)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        json.dumps({"artifacts": []}),
        json.dumps({"name": "Zlib", "artifacts": {}}),
        json.dumps({"name": "Zlib", "artifacts": [{"triplet": "x86_64-plan9", "archive": "a", "sha256": "b"}]}),
        json.dumps({"name": "Zlib", "artifacts": [{"triplet": "x86_64-linux-gnu", "archive": "a"}]}),
        json.dumps(
            {
                "name": "Zlib",
                "artifacts": [
                    {
                        "triplet": "x86_64-linux-gnu",
                        "archive": "a",
                        "sha256": "b",
                        "products": [{"kind": "widget", "variable": "w"}],
                    }
                ],
            }
        ),
        json.dumps(
            {
                "name": "Zlib",
                "artifacts": [
                    {
                        "triplet": "x86_64-linux-gnu",
                        "archive": "a",
                        "sha256": "b",
                        "products": [{"kind": "file", "path": "/abs", "variable": "f"}],
                    }
                ],
            }
        ),
    ],
)
def test_malformed_catalogs_are_rejected(raw: str, tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        parse_catalog(raw, base_dir=tmp_path)
