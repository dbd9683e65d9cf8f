"""Public package entrypoint for the binforge cross-compilation build orchestrator."""

from .audit import AuditPolicy, AuditReport, audit_prefix
from .autobuild import autobuild
from .dependencies import (
    ArtifactSet,
    Dependency,
    DirectoryCatalog,
    InMemoryCatalog,
    StaticProvider,
)
from .errors import (
    AuditFatal,
    BinforgeError,
    BuildCrashed,
    ConfigError,
    FetchFailed,
    HashMismatch,
    IntegrityMismatch,
    InvalidTriplet,
    MissingProducts,
    PolicyError,
    RevisionNotFound,
    RunCancelled,
    RunFailed,
    RunTimedOut,
    UnsatisfiedDependencies,
    ValidationError,
)
from .models import AutobuildResult, BuildOptions, PlatformFailure
from .packager import PackagedArtifact, install, package, verify
from .platforms import ANY_PLATFORM, Platform, parse_triplet, supported_platforms
from .policy import Policy
from .products import ExecutableProduct, FileProduct, FrameworkProduct, LibraryProduct
from .runners import (
    BubblewrapRunner,
    InProcessRunner,
    LocalRunner,
    ToolchainImage,
    ToolchainRegistry,
)
from .sources import ArchiveSource, DirectorySource, FileSource, GitSource

__all__ = [
    "ANY_PLATFORM",
    "ArchiveSource",
    "ArtifactSet",
    "AuditFatal",
    "AuditPolicy",
    "AuditReport",
    "AutobuildResult",
    "BinforgeError",
    "BuildCrashed",
    "BubblewrapRunner",
    "BuildOptions",
    "ConfigError",
    "Dependency",
    "DirectoryCatalog",
    "DirectorySource",
    "ExecutableProduct",
    "FetchFailed",
    "FileProduct",
    "FileSource",
    "FrameworkProduct",
    "GitSource",
    "HashMismatch",
    "InMemoryCatalog",
    "InProcessRunner",
    "IntegrityMismatch",
    "InvalidTriplet",
    "LibraryProduct",
    "LocalRunner",
    "MissingProducts",
    "PackagedArtifact",
    "Platform",
    "PlatformFailure",
    "Policy",
    "PolicyError",
    "RevisionNotFound",
    "RunCancelled",
    "RunFailed",
    "RunTimedOut",
    "StaticProvider",
    "ToolchainImage",
    "ToolchainRegistry",
    "UnsatisfiedDependencies",
    "ValidationError",
    "audit_prefix",
    "autobuild",
    "install",
    "package",
    "parse_triplet",
    "supported_platforms",
    "verify",
]
