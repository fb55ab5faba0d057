"""Breadth-first, scope-aware version resolution.

The resolver is greedy: each DependencySpec is settled when it is reached
and never revisited, so the result does not minimize the number of nested
copies. Within one breadth level, ranges for the same name that are still
pending are folded into the version choice, which makes the earliest
requester decide what gets hoisted.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Tuple

from constants import PackageSource
from common.errors import LockfileInconsistent, UnsatisfiableRange
from common.logging_utils import extra_context, Timer
from manifest.lockfile import LockEntry, Lockfile
from manifest.model import DependencySpec, Manifest
from registry.base import RegistryClient
from resolver.context import ResolutionContext
from resolver.graph import ROOT_SCOPE, DependencyGraph, ResolvedPackage, Scope
from versioning import RangeKind, VersionRange, satisfies, select_version
from versioning.npm import is_valid_range
from versioning.parser import WORKSPACE_PREFIX
from workspace.linker import WorkspaceLinker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Pending:
    spec: DependencySpec
    requester: Optional[int]  # None for the project root

    @property
    def name(self) -> str:
        return self.spec.name


class DependencyResolver:
    """Turns a manifest (and optionally a lockfile) into a DependencyGraph.

    Args:
        registry: metadata source; only consulted for what the lockfile
            cannot answer.
        linker: workspace discovery; member names always bind to the local
            package, whatever range was requested.
    """

    def __init__(self, registry: Optional[RegistryClient], linker: Optional[WorkspaceLinker] = None):
        self.registry = registry
        self.linker = linker
        self.last_context: Optional[ResolutionContext] = None

    def resolve(
        self, manifest: Manifest, lockfile: Optional[Lockfile] = None
    ) -> Tuple[DependencyGraph, Lockfile]:
        """Resolve every dependency of ``manifest``.

        Raises:
            UnsatisfiableRange: no version fits the constraints reaching a name.
            RegistryUnavailable: metadata could not be fetched.
        """
        usable = None
        if lockfile is not None:
            try:
                lockfile.check_consistency(manifest)
                usable = lockfile
            except LockfileInconsistent as exc:
                logger.info("Lockfile is out of date, resolving again: %s", exc)

        ctx = ResolutionContext(registry=self.registry, lockfile=usable)
        self.last_context = ctx
        with Timer() as timer:
            self._run(ctx, manifest)
        logger.info(
            "Resolved %d package(s) with %d registry quer%s",
            len(ctx.graph),
            ctx.metadata_queries,
            "y" if ctx.metadata_queries == 1 else "ies",
            extra=extra_context(
                event="resolve",
                outcome="success",
                duration_ms=timer.duration_ms(),
                count=len(ctx.graph),
                lockfile="reused" if usable else "ignored" if lockfile else "absent",
            ),
        )
        return ctx.graph, build_lockfile(ctx.graph, manifest, previous=lockfile)

    # -- traversal ------------------------------------------------------------

    def _run(self, ctx: ResolutionContext, manifest: Manifest) -> None:
        level: Deque[_Pending] = deque(
            _Pending(spec, None) for spec in manifest.dependency_specs()
        )
        while level:
            upcoming: List[_Pending] = []
            while level:
                item = level.popleft()
                upcoming.extend(self._settle(ctx, item, level))
            level = deque(upcoming)

    def _settle(
        self, ctx: ResolutionContext, item: _Pending, pending: Iterable[_Pending]
    ) -> List[_Pending]:
        """Bind one spec to a package, returning the specs it newly introduces."""
        graph = ctx.graph
        spec = item.spec
        rng = spec.version_range
        start = self._start_scope(graph, item.requester)

        member = self.linker.member(spec.name) if self.linker else None
        if member is not None:
            return self._bind_workspace(ctx, item, member)

        if rng.kind is RangeKind.WORKSPACE:
            raise UnsatisfiableRange(spec.name, [spec.range_expr], "no workspace package has this name")
        if not is_valid_range(rng):
            raise UnsatisfiableRange(spec.name, [spec.range_expr], "unsupported version range")

        handle, walked = graph.lookup(spec.name, start)
        if handle is not None:
            found = graph.package(handle)
            if satisfies(found.version, rng, ctx.known_dist_tags(spec.name)):
                self._reuse(graph, item, handle, walked)
                return []

        target = self._target_scope(graph, item)
        if target is None:
            raise UnsatisfiableRange(
                spec.name,
                [spec.range_expr],
                f"another copy is already visible to {spec.requested_by or 'the project'}",
            )

        package = self._from_lockfile(ctx, spec, rng, target)
        if package is None:
            package = self._from_registry(ctx, spec, rng, target, pending)

        handle = graph.add_package(package, target.id)
        graph.add_edge(item.requester, handle, spec.is_dev)
        logger.debug(
            "Placed %s at %s",
            package,
            package.location,
            extra=extra_context(event="resolve", action="place", package=package.name, depth=package.depth),
        )
        return [_Pending(dep, handle) for dep in package.dependencies]

    @staticmethod
    def _start_scope(graph: DependencyGraph, requester: Optional[int]) -> int:
        return ROOT_SCOPE if requester is None else graph.private_scope[requester]

    @staticmethod
    def _reuse(graph: DependencyGraph, item: _Pending, handle: int, walked: List[int]) -> None:
        version = graph.package(handle).version
        for sid in walked:
            graph.scopes[sid].borrowed.setdefault(item.name, version)
        graph.add_edge(item.requester, handle, item.spec.is_dev)

    @staticmethod
    def _target_scope(graph: DependencyGraph, item: _Pending) -> Optional[Scope]:
        """Hoist into the requester's own scope if free, else nest privately."""
        if item.requester is None:
            candidates = [ROOT_SCOPE]
        else:
            candidates = [graph.home_scope[item.requester], graph.private_scope[item.requester]]
        for sid in candidates:
            scope = graph.scopes[sid]
            if item.name not in scope.packages and item.name not in scope.borrowed:
                return scope
        return None

    # -- package sources ------------------------------------------------------

    def _bind_workspace(self, ctx: ResolutionContext, item: _Pending, member) -> List[_Pending]:
        graph = ctx.graph
        handle, walked = graph.lookup(item.name, self._start_scope(graph, item.requester))
        if handle is not None and graph.package(handle).is_workspace:
            self._reuse(graph, item, handle, walked)
            return []

        # Members always live in the root scope; nothing else can claim the name.
        root = graph.scopes[ROOT_SCOPE]
        relative = self.linker.relative_path(item.name)
        package = ResolvedPackage(
            name=member.name,
            version=member.version,
            integrity="",
            source=PackageSource.WORKSPACE,
            tarball=f"{WORKSPACE_PREFIX}{relative}",
            dependencies=tuple(
                dataclasses.replace(dep, is_dev=False, requested_by=member.name)
                for dep in member.manifest.dependency_specs(include_dev=False)
            ),
            depth=root.depth,
            location=f"{root.path}/{member.name}",
            local_path=str(member.path),
        )
        handle = graph.add_package(package, ROOT_SCOPE)
        graph.add_edge(item.requester, handle, item.spec.is_dev)
        logger.debug("Bound %s to workspace %s", item.spec, relative)
        return [_Pending(dep, handle) for dep in package.dependencies]

    @staticmethod
    def _from_lockfile(
        ctx: ResolutionContext, spec: DependencySpec, rng: VersionRange, target: Scope
    ) -> Optional[ResolvedPackage]:
        if ctx.lockfile is None:
            return None
        location = f"{target.path}/{spec.name}"
        entry = ctx.lockfile.get(location)
        if entry is None or entry.is_workspace or entry.name != spec.name:
            return None
        if not satisfies(entry.version, rng):
            return None
        return ResolvedPackage(
            name=entry.name,
            version=entry.version,
            integrity=entry.integrity,
            source=PackageSource.REGISTRY,
            tarball=entry.resolved,
            dependencies=tuple(
                DependencySpec(name, version, requested_by=entry.name)
                for name, version in entry.requires
            ),
            depth=target.depth,
            location=location,
        )

    @staticmethod
    def _from_registry(
        ctx: ResolutionContext,
        spec: DependencySpec,
        rng: VersionRange,
        target: Scope,
        pending: Iterable[_Pending],
    ) -> ResolvedPackage:
        records = ctx.versions(spec.name)
        if not records:
            raise UnsatisfiableRange(spec.name, [spec.range_expr], "package not found in registry")

        # Ranges still waiting in this level that will look up through the target scope.
        graph = ctx.graph
        joint = [spec]
        for other in pending:
            if other.name != spec.name or other.spec.version_range.kind is RangeKind.WORKSPACE:
                continue
            start = DependencyResolver._start_scope(graph, other.requester)
            if target.id in graph.chain(start) and is_valid_range(other.spec.version_range):
                joint.append(other.spec)

        ranges = [s.version_range for s in joint]
        tags = None
        if any(r.kind is RangeKind.TAG for r in ranges):
            tags = ctx.dist_tags(spec.name)

        candidates = [r.version for r in records]
        version = select_version(candidates, ranges, tags)
        if version is None and len(ranges) > 1:
            version = select_version(candidates, [rng], tags)
        if version is None:
            raise UnsatisfiableRange(
                spec.name,
                [s.range_expr for s in joint],
                f"available: {', '.join(candidates[-5:])}",
            )

        record = ctx.record(spec.name, version)
        return ResolvedPackage(
            name=spec.name,
            version=version,
            integrity=record.integrity,
            source=PackageSource.REGISTRY,
            tarball=record.tarball,
            dependencies=tuple(
                DependencySpec(name, expr, requested_by=spec.name)
                for name, expr in record.dependencies.items()
            ),
            depth=target.depth,
            location=f"{target.path}/{spec.name}",
        )


def build_lockfile(
    graph: DependencyGraph, manifest: Manifest, previous: Optional[Lockfile] = None
) -> Lockfile:
    """One LockEntry per placed package; unknown fields of a previous lockfile are kept."""
    lockfile = Lockfile(manifest_hash=manifest.dependency_hash())
    if previous is not None:
        lockfile.extra = dict(previous.extra)
    dev_only = graph.dev_only()
    for handle, package in enumerate(graph.packages):
        # Edge order is declaration order; replaying it keeps the breadth-first order.
        requires = dict.fromkeys(
            (graph.package(dep).name, graph.package(dep).version) for dep in graph.dependencies_of(handle)
        )
        extra = {}
        if previous is not None:
            old = previous.get(package.location)
            if old is not None and old.version == package.version:
                extra = dict(old.extra)
        lockfile.add(
            LockEntry(
                path=package.location,
                name=package.name,
                version=package.version,
                integrity=package.integrity,
                resolved=package.tarball,
                requires=tuple(requires),
                dev=handle in dev_only,
                source=package.source.value,
                extra=extra,
            )
        )
    return lockfile
