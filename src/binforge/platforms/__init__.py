"""Target platform model and enumeration helpers."""

from .expand import (
    expand,
    expand_cxxstring_abis,
    expand_gfortran_versions,
    host_platform,
    select_platform,
    supported_platforms,
)
from .model import ANY_PLATFORM, Platform, canonical_triplet, parse_triplet, platforms_match

__all__ = [
    "ANY_PLATFORM",
    "Platform",
    "canonical_triplet",
    "expand",
    "expand_cxxstring_abis",
    "expand_gfortran_versions",
    "host_platform",
    "parse_triplet",
    "platforms_match",
    "select_platform",
    "supported_platforms",
]
