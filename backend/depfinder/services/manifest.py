"""package.json parsing and dependency matching.

Matching runs through tiers, strongest first. Only the first tier reports the
declared version; the weaker tiers (unscoped suffix, workspace globs, raw
text) are approximations and always report "unknown".
"""

import fnmatch
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..errors import ManifestParseError
from ..schemas import UNKNOWN_VERSION, DependencyType

DEPENDENCY_SECTIONS = (
    DependencyType.DEPENDENCIES,
    DependencyType.DEV_DEPENDENCIES,
    DependencyType.PEER_DEPENDENCIES,
    DependencyType.OPTIONAL_DEPENDENCIES,
)
BUNDLE_SECTIONS = ("bundleDependencies", "bundledDependencies")
_WILDCARD_ONLY = {"*", "**"}


@dataclass(frozen=True)
class DependencyMatch:
    dependency_type: DependencyType
    version: str = UNKNOWN_VERSION
    is_workspace: bool = False


def parse_manifest(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ManifestParseError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestParseError("manifest is not a JSON object")
    return data


def unscoped_name(package_name: str) -> Optional[str]:
    """`@scope/name` -> `name`; None for unscoped names."""
    if package_name.startswith("@") and "/" in package_name:
        return package_name.split("/", 1)[1] or None
    return None


def _section(manifest: Dict[str, Any], section: DependencyType) -> Dict[str, Any]:
    value = manifest.get(section.value)
    return value if isinstance(value, dict) else {}


def _alias_version(spec: Any, package_name: str) -> Optional[str]:
    # "npm:@scope/name@^1.2.0" -> "^1.2.0"
    if not isinstance(spec, str) or not spec.startswith("npm:"):
        return None
    target = spec[len("npm:"):]
    if target == package_name:
        return UNKNOWN_VERSION
    if target.startswith(package_name + "@"):
        return target[len(package_name) + 1:] or UNKNOWN_VERSION
    return None


def workspace_globs(manifest: Dict[str, Any]) -> List[str]:
    workspaces = manifest.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if not isinstance(workspaces, list):
        return []
    return [entry for entry in workspaces if isinstance(entry, str)]


def glob_references(pattern: str, name: str) -> bool:
    """True when a workspace glob names `name` as one of its path segments.

    Bare wildcards (`packages/*`) reference every package and are ignored.
    """
    for segment in pattern.strip("./").split("/"):
        if not segment or segment in _WILDCARD_ONLY:
            continue
        if segment == name or fnmatch.fnmatchcase(name, segment):
            return True
    return False


def match_dependency(
    manifest: Dict[str, Any], package_name: str, raw_text: str = ""
) -> Optional[DependencyMatch]:
    if manifest.get("name") == package_name:
        return None

    for section in DEPENDENCY_SECTIONS:
        declared = _section(manifest, section)
        if package_name in declared:
            version = declared[package_name]
            return DependencyMatch(section, version if isinstance(version, str) else UNKNOWN_VERSION)

    for section in DEPENDENCY_SECTIONS:
        for spec in _section(manifest, section).values():
            version = _alias_version(spec, package_name)
            if version is not None:
                return DependencyMatch(section, version)

    for key in BUNDLE_SECTIONS:
        bundled = manifest.get(key)
        if isinstance(bundled, list) and package_name in bundled:
            version = _section(manifest, DependencyType.DEPENDENCIES).get(package_name)
            return DependencyMatch(
                DependencyType.DEPENDENCIES,
                version if isinstance(version, str) else UNKNOWN_VERSION,
            )

    suffix = unscoped_name(package_name)
    if suffix and manifest.get("name") != suffix:
        for section in DEPENDENCY_SECTIONS:
            if suffix in _section(manifest, section):
                return DependencyMatch(section)

    candidates = [package_name] + ([suffix] if suffix else [])
    for pattern in workspace_globs(manifest):
        if any(glob_references(pattern, name) for name in candidates):
            return DependencyMatch(DependencyType.WORKSPACES, is_workspace=True)

    if raw_text and f'"{package_name}"' in raw_text:
        return DependencyMatch(DependencyType.UNKNOWN)
    return None
