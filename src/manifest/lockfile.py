"""crabby.lock: the persisted, exact record of a resolution.

Layout::

    {
      "lockfileVersion": 1,
      "manifestHash": "sha256-...",
      "packages": {
        "node_modules/a": {"name": "a", "version": "1.0.0", "integrity": "...",
                           "resolved": "https://...", "requires": [{"name": "b", "version": "2.0.0"}]},
        "node_modules/a/node_modules/b": {...}
      }
    }

Keys are install locations, so a name may appear once per scope. Output is
sorted and therefore byte-stable for a given graph.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from constants import Constants, PackageSource
from common.errors import LockfileInconsistent
from common.fsutil import write_text_atomic
from manifest.model import Manifest
from versioning import RangeKind, satisfies

logger = logging.getLogger(__name__)

_ENTRY_KEYS = {"name", "version", "integrity", "resolved", "requires", "dev", "source"}
_TOP_KEYS = {"lockfileVersion", "manifestHash", "packages"}


def root_location(name: str) -> str:
    return f"{Constants.MODULES_DIR}/{name}"


@dataclass(frozen=True)
class LockEntry:
    """One installed (name, version) at one location."""

    path: str
    name: str
    version: str
    integrity: str = ""
    resolved: str = ""
    requires: Tuple[Tuple[str, str], ...] = ()
    dev: bool = False
    source: str = PackageSource.REGISTRY.value
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_workspace(self) -> bool:
        return self.source == PackageSource.WORKSPACE.value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "name": self.name,
                "version": self.version,
                "integrity": self.integrity,
                "resolved": self.resolved,
                "requires": [{"name": n, "version": v} for n, v in self.requires],
            }
        )
        if self.dev:
            data["dev"] = True
        if self.source != PackageSource.REGISTRY.value:
            data["source"] = self.source
        return data

    @classmethod
    def from_dict(cls, path: str, data: Dict[str, Any]) -> "LockEntry":
        requires = []
        for item in data.get("requires") or []:
            if isinstance(item, dict) and item.get("name") and item.get("version"):
                requires.append((str(item["name"]), str(item["version"])))
        name = data.get("name") or path.rsplit(f"{Constants.MODULES_DIR}/", 1)[-1]
        version = data.get("version")
        if not isinstance(name, str) or not isinstance(version, str) or not version:
            raise ValueError(f"lock entry '{path}' lacks a name or version")
        return cls(
            path=path,
            name=name,
            version=version,
            integrity=str(data.get("integrity") or ""),
            resolved=str(data.get("resolved") or ""),
            requires=tuple(requires),
            dev=bool(data.get("dev", False)),
            source=str(data.get("source") or PackageSource.REGISTRY.value),
            extra={k: v for k, v in data.items() if k not in _ENTRY_KEYS},
        )


@dataclass
class Lockfile:
    """Ordered set of LockEntries plus the manifest dependency hash."""

    manifest_hash: str = ""
    entries: Dict[str, LockEntry] = field(default_factory=dict)
    lockfile_version: int = Constants.LOCKFILE_VERSION
    extra: Dict[str, Any] = field(default_factory=dict)

    def add(self, entry: LockEntry) -> None:
        self.entries[entry.path] = entry

    def get(self, path: str) -> Optional[LockEntry]:
        return self.entries.get(path)

    def root_entry(self, name: str) -> Optional[LockEntry]:
        return self.entries.get(root_location(name))

    def check_consistency(self, manifest: Manifest) -> None:
        """Raise LockfileInconsistent unless the lockfile can stand in for resolution."""
        if self.manifest_hash != manifest.dependency_hash():
            raise LockfileInconsistent("manifest dependencies changed since the lockfile was written")
        for spec in manifest.dependency_specs():
            entry = self.root_entry(spec.name)
            if entry is None:
                raise LockfileInconsistent(f"{spec} has no lock entry")
            rng = spec.version_range
            if rng.kind is RangeKind.WORKSPACE:
                if not entry.is_workspace:
                    raise LockfileInconsistent(f"{spec} is locked to a registry package")
                continue
            if entry.is_workspace:
                continue
            if not satisfies(entry.version, rng):
                raise LockfileInconsistent(f"{spec} is locked to {entry.version}")

    def is_consistent(self, manifest: Manifest) -> bool:
        try:
            self.check_consistency(manifest)
        except LockfileInconsistent:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data["lockfileVersion"] = self.lockfile_version
        data["manifestHash"] = self.manifest_hash
        data["packages"] = {path: self.entries[path].to_dict() for path in sorted(self.entries)}
        return data

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"


def parse_lockfile(text: str) -> Lockfile:
    """Parse lockfile JSON; raises ValueError on structural problems."""
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("lockfile top level must be an object")
    packages = data.get("packages") or {}
    if not isinstance(packages, dict):
        raise ValueError("'packages' must be an object")
    lockfile = Lockfile(
        manifest_hash=str(data.get("manifestHash") or ""),
        lockfile_version=int(data.get("lockfileVersion", Constants.LOCKFILE_VERSION)),
        extra={k: v for k, v in data.items() if k not in _TOP_KEYS},
    )
    for path, entry in packages.items():
        if not isinstance(entry, dict):
            raise ValueError(f"lock entry '{path}' must be an object")
        lockfile.add(LockEntry.from_dict(path, entry))
    return lockfile


def load_lockfile(path: Path) -> Optional[Lockfile]:
    """Load a lockfile; a missing or malformed file is treated as absent."""
    path = Path(path)
    if not path.is_file():
        return None
    try:
        return parse_lockfile(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable lockfile %s: %s", path, exc)
        return None


def save_lockfile(lockfile: Lockfile, path: Path) -> None:
    write_text_atomic(Path(path), lockfile.dumps())
