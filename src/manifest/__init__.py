"""Manifest (package.json) and lockfile (crabby.lock) models."""

from manifest.lockfile import LockEntry, Lockfile, load_lockfile, save_lockfile
from manifest.model import (
    DependencySpec,
    Manifest,
    load_manifest,
    load_package_metadata,
    parse_manifest,
    save_manifest,
)

__all__ = [
    "DependencySpec",
    "LockEntry",
    "Lockfile",
    "Manifest",
    "load_lockfile",
    "load_manifest",
    "load_package_metadata",
    "parse_manifest",
    "save_lockfile",
    "save_manifest",
]
