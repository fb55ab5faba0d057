"""crabby - resolve and install JavaScript project dependencies.

Project-level operations wiring manifest, resolver, cache and installer
together. The command-line layer calls these and renders the returned
InstallReport.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from constants import Constants, load_project_config
from cache.store import PackageCache
from common.errors import CrabbyError, UnsatisfiableRange
from install.pipeline import Installer
from install.report import InstallReport
from install.scripts import ScriptRunner
from manifest.lockfile import Lockfile, load_lockfile, save_lockfile
from manifest.model import load_manifest, save_manifest
from registry.base import RegistryClient
from registry.npm.client import NpmRegistryClient
from resolver.graph import ROOT_SCOPE
from resolver.resolver import DependencyResolver
from versioning import RangeKind, satisfies
from versioning.npm import sort_versions
from workspace.linker import WorkspaceLinker

logger = logging.getLogger(__name__)

_NON_REGISTRY_RANGES = (RangeKind.WORKSPACE, RangeKind.TAG, RangeKind.UNSUPPORTED)


def _registry_for(root: Path, registry: Optional[RegistryClient]) -> RegistryClient:
    if registry is not None:
        return registry
    return NpmRegistryClient(load_project_config(str(root))["registry"])


def _apply_integrities(lockfile: Lockfile, report: InstallReport) -> None:
    """Record digests the cache computed for entries that arrived without one."""
    for location, integrity in report.integrities.items():
        entry = lockfile.get(location)
        if entry is not None and not entry.integrity:
            lockfile.add(dataclasses.replace(entry, integrity=integrity))


def install_project(
    root,
    registry: Optional[RegistryClient] = None,
    *,
    cache: Optional[PackageCache] = None,
    include_dev: bool = True,
    script_runner: Optional[ScriptRunner] = None,
) -> InstallReport:
    """Resolve and install everything ``root/package.json`` declares.

    Fatal errors end up in ``report.fatal_error``; the lockfile is only
    written when the install succeeded.
    """
    root = Path(root).resolve()
    report = InstallReport()
    try:
        manifest = load_manifest(root / Constants.MANIFEST_FILE)
        linker = WorkspaceLinker.from_manifest(root, manifest)
        lockfile_path = root / Constants.LOCKFILE_FILE
        registry = _registry_for(root, registry)

        graph, lockfile = DependencyResolver(registry, linker).resolve(manifest, load_lockfile(lockfile_path))

        installer = Installer(
            root,
            registry,
            cache or PackageCache(),
            linker=linker,
            script_runner=script_runner,
            include_dev=include_dev,
            root_manifest=manifest,
        )
        report = installer.install(graph)
        if not report.ok:
            return report

        _apply_integrities(lockfile, report)
        save_lockfile(lockfile, lockfile_path)
        linker.link_all(root / Constants.MODULES_DIR, skip=graph.scopes[ROOT_SCOPE].packages)
    except CrabbyError as exc:
        logger.error("%s", exc)
        report.fatal_error = exc
    return report


def latest_version(registry: RegistryClient, name: str) -> str:
    """The current ``latest`` tag, or the highest version published."""
    version = registry.get_dist_tags(name).get("latest")
    if not version:
        stable = sort_versions(r.version for r in registry.get_versions(name))
        if not stable:
            raise UnsatisfiableRange(name, ["latest"], "package not found in registry")
        version = stable[-1]
    return version


def latest_range(registry: RegistryClient, name: str) -> str:
    return f"^{latest_version(registry, name)}"


def add_dependency(
    root,
    name: str,
    range_expr: Optional[str] = None,
    *,
    dev: bool = False,
    registry: Optional[RegistryClient] = None,
    cache: Optional[PackageCache] = None,
    script_runner: Optional[ScriptRunner] = None,
) -> Tuple[str, InstallReport]:
    """Add ``name`` to the manifest and install; returns the recorded range and report."""
    root = Path(root).resolve()
    registry = _registry_for(root, registry)
    report = InstallReport()
    try:
        manifest = load_manifest(root / Constants.MANIFEST_FILE)
        expr = range_expr or latest_range(registry, name)
        if dev:
            manifest.add_dev_dependency(name, expr)
        else:
            manifest.add_dependency(name, expr)
        save_manifest(manifest)
    except CrabbyError as exc:
        logger.error("%s", exc)
        report.fatal_error = exc
        return range_expr or "", report
    logger.info("Added %s@%s to %s", name, expr, "devDependencies" if dev else "dependencies")
    return expr, install_project(root, registry, cache=cache, script_runner=script_runner)


def remove_dependency(
    root,
    name: str,
    *,
    registry: Optional[RegistryClient] = None,
    cache: Optional[PackageCache] = None,
    script_runner: Optional[ScriptRunner] = None,
) -> Tuple[bool, InstallReport]:
    """Drop ``name`` from both dependency sections and reinstall."""
    root = Path(root).resolve()
    report = InstallReport()
    try:
        manifest = load_manifest(root / Constants.MANIFEST_FILE)
        if not manifest.remove_dependency(name):
            logger.warning("%s is not a dependency of %s", name, manifest.name)
            return False, report
        save_manifest(manifest)
    except CrabbyError as exc:
        logger.error("%s", exc)
        report.fatal_error = exc
        return False, report
    logger.info("Removed %s", name)
    return True, install_project(root, registry, cache=cache, script_runner=script_runner)


def outdated(root, registry: Optional[RegistryClient] = None) -> List[Tuple[str, str, str]]:
    """(name, declared range, latest version) for every registry dependency behind ``latest``.

    A dependency is behind when its range does not admit ``latest`` or the
    lockfile pins it to another version. Workspace members and ranges that
    do not name registry versions are skipped.
    """
    root = Path(root).resolve()
    registry = _registry_for(root, registry)
    manifest = load_manifest(root / Constants.MANIFEST_FILE)
    linker = WorkspaceLinker.from_manifest(root, manifest)
    lockfile = load_lockfile(root / Constants.LOCKFILE_FILE)

    behind = []
    for spec in manifest.dependency_specs():
        rng = spec.version_range
        if linker.member(spec.name) is not None or rng.kind in _NON_REGISTRY_RANGES:
            continue
        try:
            latest = latest_version(registry, spec.name)
        except UnsatisfiableRange as exc:
            logger.warning("%s", exc)
            continue
        locked = lockfile.root_entry(spec.name) if lockfile is not None else None
        if not satisfies(latest, rng) or (locked is not None and locked.version != latest):
            behind.append((spec.name, spec.range_expr, latest))
    return behind


def update_dependency(
    root,
    name: str,
    *,
    registry: Optional[RegistryClient] = None,
    cache: Optional[PackageCache] = None,
    script_runner: Optional[ScriptRunner] = None,
) -> Tuple[str, InstallReport]:
    """Rewrite ``name``'s range to ``^latest`` in its current section and reinstall."""
    root = Path(root).resolve()
    registry = _registry_for(root, registry)
    report = InstallReport()
    try:
        manifest = load_manifest(root / Constants.MANIFEST_FILE)
        if name in manifest.dependencies:
            previous = manifest.dependencies[name]
        elif name in manifest.dev_dependencies:
            previous = manifest.dev_dependencies[name]
        else:
            raise UnsatisfiableRange(name, [], f"not a dependency of {manifest.name}")
        expr = latest_range(registry, name)
        if name in manifest.dependencies:
            manifest.dependencies[name] = expr
        else:
            manifest.dev_dependencies[name] = expr
        save_manifest(manifest)
    except CrabbyError as exc:
        logger.error("%s", exc)
        report.fatal_error = exc
        return "", report
    logger.info("Updated %s from %s to %s", name, previous, expr)
    return expr, install_project(root, registry, cache=cache, script_runner=script_runner)


def clean_cache(cache_dir=None) -> int:
    return PackageCache(cache_dir).clean()


def cache_stats(cache_dir=None) -> Tuple[int, int]:
    return PackageCache(cache_dir).stats()
