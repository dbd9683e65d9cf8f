"""Dependency catalogs and resolution."""

from .catalog import (
    ArtifactSet,
    Dependency,
    DependencyCatalog,
    DirectoryCatalog,
    InMemoryCatalog,
    StaticProvider,
)
from .resolve import (
    DependencyResolver,
    ResolvedDependencies,
    StagedArtifact,
    UnresolvedDependencyWarning,
)

__all__ = [
    "ArtifactSet",
    "Dependency",
    "DependencyCatalog",
    "DependencyResolver",
    "DirectoryCatalog",
    "InMemoryCatalog",
    "ResolvedDependencies",
    "StagedArtifact",
    "StaticProvider",
    "UnresolvedDependencyWarning",
]
