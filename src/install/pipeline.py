"""Fetch/extract/link/script pipeline driven by a resolved DependencyGraph.

Fetches run on a bounded thread pool as soon as the plan is known. The main
thread walks the plan in postorder, waiting only for the fetch of the step
it is on, so scripts of finished subtrees overlap with downloads of the rest.
Any fetch or filesystem failure is fatal: outstanding work is cancelled and
the report carries the error. Script failures are collected, never raised.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from constants import Constants
from cache.store import CacheEntry, PackageCache
from common.errors import CrabbyError, FileSystemError, IntegrityMismatch, NetworkError, ScriptError
from common.fsutil import remove_path
from common.logging_utils import extra_context, Timer
from common.retry import retry_call
from install.bins import link_bins
from install.plan import InstallPlan, InstallStep
from install.report import InstallReport
from install.scripts import ScriptRunner
from manifest.model import Manifest, load_package_metadata
from registry.base import RegistryClient
from resolver.graph import DependencyGraph
from workspace.linker import WorkspaceLinker

logger = logging.getLogger(__name__)

_FetchResult = Optional[Tuple[CacheEntry, bool]]  # (entry, served from cache)


def materialize(source: Path, target: Path, keep_nested: bool = False) -> None:
    """Place a copy of ``source`` at ``target``, hard-linking files where possible.

    The tree is assembled in a sibling scratch directory and renamed into
    place. With ``keep_nested`` an existing ``target/node_modules`` (holding
    already installed private dependencies) is carried over.
    """
    source = Path(source)
    target = Path(target)
    scratch = target.parent / f".{target.name}.crabby-tmp"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        remove_path(scratch)
        for dirpath, _dirnames, filenames in os.walk(source):
            rel = os.path.relpath(dirpath, source)
            dest_dir = scratch if rel == "." else scratch / rel
            dest_dir.mkdir(parents=True, exist_ok=True)
            for filename in filenames:
                src = os.path.join(dirpath, filename)
                dst = dest_dir / filename
                try:
                    os.link(src, dst)
                except OSError:
                    shutil.copy2(src, dst)

        nested = target / Constants.MODULES_DIR
        if keep_nested and nested.is_dir() and not target.is_symlink():
            remove_path(scratch / Constants.MODULES_DIR)
            os.rename(nested, scratch / Constants.MODULES_DIR)
        remove_path(target)
        os.rename(scratch, target)
    except OSError as exc:
        remove_path(scratch)
        raise FileSystemError(f"cannot install into {target}: {exc}") from exc


class _FetchState:
    """Shared between workers: the first fatal error and the cancellation flag."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self.error: Optional[CrabbyError] = None
        self.failed_package: Optional[str] = None

    def fail(self, exc: CrabbyError, package: str) -> None:
        with self._lock:
            if self.error is None:
                self.error = exc
                self.failed_package = package
        self.cancelled.set()


class Installer:
    """Materializes a DependencyGraph under ``root``.

    Args:
        root: project directory; packages go to ``root/node_modules``.
        registry: tarball source for cache misses.
        cache: shared package store.
        linker: workspace linker used for workspace packages.
        script_runner: lifecycle script executor.
        concurrency: fetch pool width.
        include_dev: install packages only reachable from devDependencies.
        root_manifest: the project's own manifest; its lifecycle scripts run last.
    """

    def __init__(
        self,
        root: Path,
        registry: Optional[RegistryClient],
        cache: PackageCache,
        *,
        linker: Optional[WorkspaceLinker] = None,
        script_runner: Optional[ScriptRunner] = None,
        concurrency: Optional[int] = None,
        include_dev: bool = True,
        root_manifest: Optional[Manifest] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.root = Path(root)
        self.registry = registry
        self.cache = cache
        self.linker = linker or WorkspaceLinker(self.root, [])
        self.scripts = script_runner or ScriptRunner()
        self.concurrency = max(1, concurrency or Constants.FETCH_CONCURRENCY)
        self.include_dev = include_dev
        self.root_manifest = root_manifest
        self._sleep = sleep

    def install(self, graph: DependencyGraph) -> InstallReport:
        """Install every package of ``graph``; never raises for package errors."""
        plan = InstallPlan.from_graph(graph, self.root, include_dev=self.include_dev)
        report = InstallReport()
        state = _FetchState()
        logger.info("Installing %d package(s)", len(plan))

        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="crabby-fetch")
        futures: Dict[int, "Future[_FetchResult]"] = {}
        by_key: Dict[Tuple[str, str, str], "Future[_FetchResult]"] = {}
        claimed: Set[int] = set()
        with Timer() as timer:
            try:
                for step in plan.fetch_steps():
                    # One download per cache key, however many locations need it.
                    key = (step.package.name, step.package.version, step.package.integrity)
                    if key not in by_key:
                        by_key[key] = executor.submit(self._fetch, step, state)
                    futures[step.handle] = by_key[key]
                for step in plan:
                    if step.package.is_workspace:
                        self._link_workspace(step, report)
                for step in plan:
                    entry = self._await(step, futures, claimed, state, report) if step.needs_fetch else None
                    self._install_step(graph, plan, step, entry, report)
                self._run_root_scripts(report)
                self._prune(plan.scope_names(graph))
            except CrabbyError as exc:
                state.cancelled.set()
                for future in futures.values():
                    future.cancel()
                report.fatal_error = exc
                logger.error(
                    "Install aborted: %s",
                    exc,
                    extra=extra_context(event="install", outcome="failure", package=state.failed_package),
                )
            finally:
                executor.shutdown(wait=True)

        if report.ok:
            logger.info(
                "%s",
                report.summary(),
                extra=extra_context(event="install", outcome="success", duration_ms=timer.duration_ms()),
            )
        return report

    # -- fetch ---------------------------------------------------------------

    def _fetch(self, step: InstallStep, state: _FetchState) -> _FetchResult:
        if state.cancelled.is_set():
            return None
        package = step.package
        entry = self.cache.lookup(package.name, package.version, package.integrity)
        if entry is not None:
            return entry, True

        def attempt() -> CacheEntry:
            if self.registry is None or not package.tarball:
                raise NetworkError(f"no download location for {package}")
            data = self.registry.fetch_tarball(package.tarball)
            return self.cache.store(package.name, package.version, package.integrity, data)

        try:
            entry = retry_call(
                attempt,
                retry_on=(NetworkError, IntegrityMismatch),
                context=f"fetch {package}",
                sleep=self._sleep,
                should_continue=lambda: not state.cancelled.is_set(),
            )
        except CrabbyError as exc:
            state.fail(exc, str(package))
            raise
        return entry, False

    @staticmethod
    def _await(
        step: InstallStep,
        futures: Dict[int, "Future[_FetchResult]"],
        claimed: Set[int],
        state: _FetchState,
        report: InstallReport,
    ) -> CacheEntry:
        if state.error is not None:
            report.failed.append(state.failed_package or str(step.package))
            raise state.error
        future = futures[step.handle]
        try:
            result = future.result()
        except CrabbyError:
            report.failed.append(str(step.package))
            raise
        if result is None:
            report.failed.append(state.failed_package or str(step.package))
            raise state.error or NetworkError(f"fetch of {step.package} was cancelled")
        entry, hit = result
        shared = id(future) in claimed
        claimed.add(id(future))
        if hit or shared:
            report.cache_hits += 1
        else:
            report.fetched += 1
        if entry.integrity and entry.integrity != step.package.integrity:
            report.integrities[step.package.location] = entry.integrity
        return entry

    # -- extract, link, scripts ----------------------------------------------

    def _link_workspace(self, step: InstallStep, report: InstallReport) -> None:
        try:
            self.linker.link(Path(step.package.local_path), step.target)
        except FileSystemError:
            report.failed.append(str(step.package))
            raise

    def _install_step(
        self,
        graph: DependencyGraph,
        plan: InstallPlan,
        step: InstallStep,
        entry: Optional[CacheEntry],
        report: InstallReport,
    ) -> None:
        package = step.package
        if entry is not None:
            nested = plan.scope_names(graph, graph.private_scope[step.handle])
            try:
                materialize(entry.path, step.target, keep_nested=bool(nested))
                if nested:
                    self._prune_dir(step.target / Constants.MODULES_DIR, nested)
            except FileSystemError:
                report.failed.append(str(package))
                raise

        metadata = load_package_metadata(step.target, package.name)
        link_bins(step.target, metadata.bin_entries(), step.bin_dir)
        report.installed.append(str(package))
        logger.debug(
            "Installed %s",
            package,
            extra=extra_context(event="install", action="link", package=package.name, target=package.location),
        )

        try:
            self.scripts.run(step.target, package.name, package.version, metadata.scripts, step.path_dirs)
        except ScriptError as exc:
            report.failed_scripts.append(exc)

    def _run_root_scripts(self, report: InstallReport) -> None:
        manifest = self.root_manifest
        if manifest is None or not manifest.scripts:
            return
        bin_dir = self.root / Constants.MODULES_DIR / Constants.BIN_DIR
        try:
            self.scripts.run(self.root, manifest.name, manifest.version, manifest.scripts, (bin_dir,))
        except ScriptError as exc:
            report.failed_scripts.append(exc)

    def _prune(self, installed: Set[str]) -> List[str]:
        """Remove root-level entries that are neither installed nor workspace members."""
        return self._prune_dir(self.root / Constants.MODULES_DIR, set(installed) | set(self.linker.discover()))

    def _prune_dir(self, modules: Path, keep: Set[str]) -> List[str]:
        """Remove entries of one modules directory whose names are not in ``keep``."""
        if not modules.is_dir():
            return []
        try:
            removed = self._prune_children(modules, keep)
        except OSError as exc:
            raise FileSystemError(f"cannot prune {modules}: {exc}") from exc
        if removed:
            logger.info(
                "Removed %d extraneous package(s) from %s: %s",
                len(removed),
                modules.relative_to(self.root).as_posix(),
                ", ".join(removed),
            )
        return removed

    @staticmethod
    def _prune_children(modules: Path, keep: Set[str]) -> List[str]:
        removed = []
        for child in sorted(modules.iterdir()):
            if child.name.startswith("."):
                continue
            if child.name.startswith("@") and child.is_dir() and not child.is_symlink():
                for sub in sorted(child.iterdir()):
                    name = f"{child.name}/{sub.name}"
                    if name not in keep:
                        remove_path(sub)
                        removed.append(name)
                if not any(child.iterdir()):
                    child.rmdir()
            elif child.name not in keep:
                remove_path(child)
                removed.append(child.name)
        return removed
