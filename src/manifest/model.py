"""package.json model: parsing, dependency specs and write-back."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from common.errors import MalformedManifest
from common.fsutil import write_json_atomic
from versioning import VersionRange, parse_range

logger = logging.getLogger(__name__)

_BOM = "\ufeff"


@dataclass(frozen=True)
class DependencySpec:
    """One requested dependency: ``requested_by`` is None for the project root."""

    name: str
    range_expr: str
    is_dev: bool = False
    requested_by: Optional[str] = None

    @property
    def version_range(self) -> VersionRange:
        return parse_range(self.range_expr)

    def __str__(self) -> str:
        return f"{self.name}@{self.range_expr}"


@dataclass
class Manifest:
    """A project (or installed package) descriptor."""

    name: str
    version: str = ""
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    scripts: Dict[str, str] = field(default_factory=dict)
    workspaces: List[str] = field(default_factory=list)
    bin: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    def dependency_specs(self, include_dev: bool = True) -> List[DependencySpec]:
        """Specs in declaration order: dependencies, then devDependencies.

        A name listed in both sections is a production dependency.
        """
        specs = [
            DependencySpec(name, rng, is_dev=False) for name, rng in self.dependencies.items()
        ]
        if include_dev:
            specs.extend(
                DependencySpec(name, rng, is_dev=True)
                for name, rng in self.dev_dependencies.items()
                if name not in self.dependencies
            )
        return specs

    def dependency_hash(self) -> str:
        """Stable digest of the dependency sections, used for lockfile drift detection."""
        payload = json.dumps(
            {"dependencies": self.dependencies, "devDependencies": self.dev_dependencies},
            sort_keys=True,
            separators=(",", ":"),
        )
        return "sha256-" + hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def add_dependency(self, name: str, range_expr: str) -> None:
        self.dev_dependencies.pop(name, None)
        self.dependencies[name] = range_expr

    def add_dev_dependency(self, name: str, range_expr: str) -> None:
        self.dependencies.pop(name, None)
        self.dev_dependencies[name] = range_expr

    def remove_dependency(self, name: str) -> bool:
        removed = self.dependencies.pop(name, None) is not None
        removed = self.dev_dependencies.pop(name, None) is not None or removed
        return removed

    def bin_entries(self) -> Dict[str, str]:
        """Executable name -> relative file path, from a string or mapping ``bin``."""
        if isinstance(self.bin, str) and self.bin.strip():
            return {self.name.split("/")[-1]: self.bin}
        if isinstance(self.bin, dict):
            return {
                str(k).split("/")[-1]: v
                for k, v in self.bin.items()
                if isinstance(v, str) and v.strip()
            }
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, keeping unknown fields and the original key order."""
        data = dict(self.raw)
        data["name"] = self.name
        if self.version or "version" in data:
            data["version"] = self.version
        for key, value in (
            ("scripts", self.scripts),
            ("dependencies", self.dependencies),
            ("devDependencies", self.dev_dependencies),
        ):
            if value or key in data:
                data[key] = dict(value)
        if self.workspaces and not isinstance(data.get("workspaces"), dict):
            data["workspaces"] = list(self.workspaces)
        return data


def _pairs_hook(source: Optional[str]):
    def hook(pairs):
        result: Dict[str, Any] = {}
        for key, value in pairs:
            if key in result:
                logger.warning("%s: duplicate key '%s'; the last value wins", source or "manifest", key)
            result[key] = value
        return result
    return hook


def _string_map(data: Dict[str, Any], key: str, source: Optional[str]) -> Dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedManifest(f"'{key}' must be an object", source)
    for name, rng in value.items():
        if not isinstance(rng, str):
            raise MalformedManifest(f"'{key}.{name}' must be a string", source)
    return dict(value)


def _workspace_patterns(data: Dict[str, Any], source: Optional[str]) -> List[str]:
    value = data.get("workspaces")
    if value is None:
        return []
    if isinstance(value, dict):
        value = value.get("packages", [])
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        raise MalformedManifest("'workspaces' must be a list of glob patterns", source)
    return list(value)


def parse_manifest(text: str, source: Optional[str] = None, require_name: bool = True) -> Manifest:
    """Parse package.json text.

    Raises:
        MalformedManifest: invalid JSON, wrong field types, or a missing name.
    """
    if text.startswith(_BOM):
        text = text[len(_BOM):]
    try:
        data = json.loads(text, object_pairs_hook=_pairs_hook(source))
    except ValueError as exc:
        raise MalformedManifest(f"invalid JSON: {exc}", source) from exc
    if not isinstance(data, dict):
        raise MalformedManifest("top level must be an object", source)

    name = data.get("name", "")
    if not isinstance(name, str) or (require_name and not name.strip()):
        raise MalformedManifest("missing 'name'", source)
    version = data.get("version", "")
    if not isinstance(version, str):
        raise MalformedManifest("'version' must be a string", source)

    return Manifest(
        name=name.strip(),
        version=version.strip(),
        dependencies=_string_map(data, "dependencies", source),
        dev_dependencies=_string_map(data, "devDependencies", source),
        scripts=_string_map(data, "scripts", source),
        workspaces=_workspace_patterns(data, source),
        bin=data.get("bin"),
        raw=data,
        path=Path(source) if source else None,
    )


def load_manifest(path: Path, require_name: bool = True) -> Manifest:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise MalformedManifest("file not found", str(path)) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise MalformedManifest(f"unreadable: {exc}", str(path)) from exc
    return parse_manifest(text, source=str(path), require_name=require_name)


def save_manifest(manifest: Manifest, path: Optional[Path] = None) -> Path:
    target = Path(path or manifest.path or "package.json")
    write_json_atomic(target, manifest.to_dict())
    manifest.path = target
    return target


def load_package_metadata(package_dir: Path, fallback_name: str = "") -> Manifest:
    """Read an installed package's package.json leniently.

    Installed packages are not ours to validate; a broken file yields an empty
    descriptor (no scripts, no bins) with a warning.
    """
    path = Path(package_dir) / "package.json"
    if not path.is_file():
        return Manifest(name=fallback_name)
    try:
        manifest = load_manifest(path, require_name=False)
    except MalformedManifest as exc:
        logger.warning("Failed to parse package.json for %s: %s", fallback_name or package_dir, exc)
        return Manifest(name=fallback_name)
    if not manifest.name:
        manifest.name = fallback_name
    return manifest
