"""Audit policy data: base-system allow-lists and runtime-support ABI rules.

Both are platform knowledge that drifts over time, so they are plain data that
can be replaced from a JSON file::

    {
      "allowlists": {"glibc": ["libc.so.*", ...], "windows": ["kernel32.dll", ...]},
      "runtime_support": [
        {"library": "libgfortran*", "axis": "libgfortran_version",
         "provider": "CompilerSupportLibraries"},
        {"library": "libstdc++*", "axis": "cxxstring_abi",
         "markers": {"cxx11": ["__cxx11"], "cxx03": ["_ZNSs", "_ZNKSs"]}}
      ]
    }

Allow-list keys are ``glibc``, ``musl``, ``macos``, ``windows`` and ``freebsd``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Any

from binforge.errors import ConfigError
from binforge.platforms import Platform

_SONAME_MAJOR = re.compile(r"(?:\.so\.|\.|-)(\d+)(?:[.\-]|\.dylib$|\.dll$|$)")
_AXES = frozenset({"libgfortran_version", "libstdcxx_version", "cxxstring_abi"})

DEFAULT_ALLOWLISTS: dict[str, tuple[str, ...]] = {
    "glibc": (
        "libc.so.*",
        "libm.so.*",
        "libdl.so.*",
        "librt.so.*",
        "libpthread.so.*",
        "libutil.so.*",
        "libresolv.so.*",
        "libgcc_s.so.*",
        "libstdc++.so.*",
        "libgomp.so.*",
        "ld-linux*.so.*",
        "ld64.so.*",
    ),
    "musl": (
        "libc.so",
        "libc.musl-*.so.*",
        "ld-musl-*.so.*",
        "libgcc_s.so.*",
        "libstdc++.so.*",
        "libgomp.so.*",
    ),
    "macos": (
        "/usr/lib/libSystem.B.dylib",
        "/usr/lib/libc++.*.dylib",
        "/usr/lib/libc++abi.dylib",
        "/usr/lib/libobjc.A.dylib",
        "/usr/lib/libz.1.dylib",
        "/usr/lib/libiconv.2.dylib",
        "/System/Library/Frameworks/*",
    ),
    "windows": (
        "kernel32.dll",
        "user32.dll",
        "gdi32.dll",
        "advapi32.dll",
        "shell32.dll",
        "ole32.dll",
        "oleaut32.dll",
        "ws2_32.dll",
        "msvcrt.dll",
        "ntdll.dll",
        "bcrypt.dll",
        "crypt32.dll",
        "secur32.dll",
        "comdlg32.dll",
        "shlwapi.dll",
        "version.dll",
        "winmm.dll",
        "api-ms-win-*.dll",
        "libgcc_s_*.dll",
        "libstdc++-*.dll",
        "libwinpthread-*.dll",
    ),
    "freebsd": (
        "libc.so.*",
        "libm.so.*",
        "libthr.so.*",
        "libutil.so.*",
        "libgcc_s.so.*",
        "libc++.so.*",
        "libcxxrt.so.*",
        "libexecinfo.so.*",
    ),
}


@dataclass(frozen=True, slots=True)
class RuntimeSupportRule:
    """A runtime library whose ABI is one of the platform's version axes.

    Without ``markers`` the ABI value is the library's SONAME major version;
    with them, the first value whose marker substrings appear in the binary's
    dynamic symbols wins. ``provider`` names the dependency that ships the
    library; linking it without declaring the provider earns a warning.
    """

    library: str
    axis: str
    provider: str | None = None
    markers: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def applies_to(self, library: str) -> bool:
        return fnmatchcase(PurePosixPath(library).name.lower(), self.library.lower())

    def observed_value(self, library: str, symbols: tuple[str, ...]) -> str | None:
        if self.markers:
            for value, needles in self.markers.items():
                if any(needle in symbol for symbol in symbols for needle in needles):
                    return value
            return None
        match = _SONAME_MAJOR.search(PurePosixPath(library).name)
        return match.group(1) if match else None


DEFAULT_RUNTIME_RULES: tuple[RuntimeSupportRule, ...] = (
    RuntimeSupportRule(
        library="libgfortran*",
        axis="libgfortran_version",
        provider="CompilerSupportLibraries",
    ),
    RuntimeSupportRule(
        library="libstdc++*",
        axis="cxxstring_abi",
        markers={"cxx11": ("__cxx11",), "cxx03": ("_ZNSs", "_ZNKSs")},
    ),
)


@dataclass(frozen=True, slots=True)
class AuditPolicy:
    allowlists: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_ALLOWLISTS))
    runtime_rules: tuple[RuntimeSupportRule, ...] = DEFAULT_RUNTIME_RULES
    require_license: bool = True

    @classmethod
    def from_file(cls, path: str | Path) -> AuditPolicy:
        policy_path = Path(path)
        try:
            raw = policy_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigError("Audit policy file does not exist.", context={"path": str(policy_path)}) from exc
        return parse_audit_policy(raw)

    def allowlist_key(self, platform: Platform) -> str:
        if platform.os == "linux":
            return platform.libc or "glibc"
        return platform.os

    def is_allowed(self, library: str, platform: Platform) -> bool:
        patterns = self.allowlists.get(self.allowlist_key(platform), ())
        if platform.is_windows:
            name = library.lower()
            return any(fnmatchcase(name, pattern.lower()) for pattern in patterns)
        candidates = (library, PurePosixPath(library).name)
        return any(fnmatchcase(c, pattern) for c in candidates for pattern in patterns)

    def rule_for(self, library: str) -> RuntimeSupportRule | None:
        return next((rule for rule in self.runtime_rules if rule.applies_to(library)), None)


def parse_audit_policy(raw: str) -> AuditPolicy:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError("Invalid audit policy JSON.", hint=str(exc)) from exc
    if not isinstance(payload, dict):
        raise ConfigError("Invalid audit policy payload type.")

    allowlists = dict(DEFAULT_ALLOWLISTS)
    raw_allowlists = payload.get("allowlists", {})
    if not isinstance(raw_allowlists, dict):
        raise ConfigError("Invalid audit policy `allowlists` value.")
    for key, patterns in raw_allowlists.items():
        if key not in DEFAULT_ALLOWLISTS:
            raise ConfigError(f"Unknown audit allow-list `{key}`.")
        allowlists[key] = tuple(_string_list(patterns, f"allowlists.{key}"))

    rules = DEFAULT_RUNTIME_RULES
    if "runtime_support" in payload:
        raw_rules = payload["runtime_support"]
        if not isinstance(raw_rules, list):
            raise ConfigError("Invalid audit policy `runtime_support` value.")
        rules = tuple(_parse_rule(item) for item in raw_rules)

    require_license = payload.get("require_license", True)
    if not isinstance(require_license, bool):
        raise ConfigError("Invalid audit policy `require_license` value.")
    return AuditPolicy(allowlists=allowlists, runtime_rules=rules, require_license=require_license)


def _parse_rule(item: Any) -> RuntimeSupportRule:
    if not isinstance(item, dict):
        raise ConfigError("Invalid runtime support rule.")
    axis = _required_str(item, "axis")
    if axis not in _AXES:
        raise ConfigError(f"Unknown runtime support axis `{axis}`.")
    provider = item.get("provider")
    if provider is not None and not isinstance(provider, str):
        raise ConfigError("Invalid runtime support `provider` value.")
    raw_markers = item.get("markers", {})
    if not isinstance(raw_markers, dict):
        raise ConfigError("Invalid runtime support `markers` value.")
    markers = {value: tuple(_string_list(needles, f"markers.{value}")) for value, needles in raw_markers.items()}
    return RuntimeSupportRule(
        library=_required_str(item, "library"),
        axis=axis,
        provider=provider,
        markers=markers,
    )


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Invalid audit policy `{key}` value.")
    return value


def _string_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Invalid audit policy `{key}` value.")
    return value


__all__ = [
    "AuditPolicy",
    "DEFAULT_ALLOWLISTS",
    "DEFAULT_RUNTIME_RULES",
    "RuntimeSupportRule",
    "parse_audit_policy",
]
