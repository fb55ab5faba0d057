"""Dependency graph: an arena of resolved packages grouped into scopes.

Packages are addressed by integer handles so a package can depend on an
ancestor without an ownership cycle. A scope is one ``node_modules``
directory; the root scope is the project's, and every package owns a
private scope (its own ``node_modules``) that is only materialized when
something had to be nested there.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from constants import Constants, PackageSource
from manifest.model import DependencySpec

ROOT_SCOPE = 0


@dataclass(frozen=True)
class ResolvedPackage:
    """A concrete (name, version) placed at one location. Immutable."""

    name: str
    version: str
    integrity: str
    source: PackageSource
    tarball: str
    dependencies: Tuple[DependencySpec, ...]
    depth: int
    location: str
    local_path: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.name, self.version, self.location)

    @property
    def is_workspace(self) -> bool:
        return self.source is PackageSource.WORKSPACE

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass
class Scope:
    """One node_modules directory: at most one package per name."""

    id: int
    parent: Optional[int]
    owner: Optional[int]
    path: str
    depth: int
    packages: Dict[str, int] = field(default_factory=dict)
    # name -> version that lookups passing through this scope found further up;
    # placing a different version here would shadow it.
    borrowed: Dict[str, str] = field(default_factory=dict)


class DependencyGraph:
    """Rooted, possibly cyclic graph of ResolvedPackages."""

    def __init__(self) -> None:
        self.packages: List[ResolvedPackage] = []
        self.scopes: List[Scope] = [
            Scope(id=ROOT_SCOPE, parent=None, owner=None, path=Constants.MODULES_DIR, depth=0)
        ]
        self.edges: Dict[int, List[int]] = {}
        self.roots: List[Tuple[int, bool]] = []  # (handle, is_dev) in manifest order
        self.home_scope: List[int] = []
        self.private_scope: List[int] = []

    def __len__(self) -> int:
        return len(self.packages)

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self.packages)

    # -- construction -----------------------------------------------------

    def add_package(self, package: ResolvedPackage, scope_id: int) -> int:
        scope = self.scopes[scope_id]
        if package.name in scope.packages:
            raise ValueError(f"{package.name} already placed in {scope.path}")
        handle = len(self.packages)
        self.packages.append(package)
        self.edges[handle] = []
        self.home_scope.append(scope_id)
        scope.packages[package.name] = handle
        private = Scope(
            id=len(self.scopes),
            parent=scope_id,
            owner=handle,
            path=f"{package.location}/{Constants.MODULES_DIR}",
            depth=scope.depth + 1,
        )
        self.scopes.append(private)
        self.private_scope.append(private.id)
        return handle

    def add_edge(self, requester: Optional[int], handle: int, is_dev: bool = False) -> None:
        if requester is None:
            self.roots.append((handle, is_dev))
        else:
            self.edges[requester].append(handle)

    # -- queries ----------------------------------------------------------

    def package(self, handle: int) -> ResolvedPackage:
        return self.packages[handle]

    def dependencies_of(self, handle: int) -> List[int]:
        return list(self.edges.get(handle, ()))

    def chain(self, scope_id: int) -> List[int]:
        """Scope ids from ``scope_id`` up to the root, nearest first."""
        ids = []
        current: Optional[int] = scope_id
        while current is not None:
            ids.append(current)
            current = self.scopes[current].parent
        return ids

    def lookup(self, name: str, scope_id: int) -> Tuple[Optional[int], List[int]]:
        """Node-style lookup: the nearest package called ``name`` visible from a scope.

        Returns the handle (or None) and the scopes walked before it was found.
        """
        walked = []
        for sid in self.chain(scope_id):
            handle = self.scopes[sid].packages.get(name)
            if handle is not None:
                return handle, walked
            walked.append(sid)
        return None, walked

    def find(self, name: str, scope_id: int = ROOT_SCOPE) -> Optional[ResolvedPackage]:
        handle = self.scopes[scope_id].packages.get(name)
        return None if handle is None else self.packages[handle]

    def scope_of(self, handle: int) -> Scope:
        return self.scopes[self.home_scope[handle]]

    def nested_scopes(self) -> List[Scope]:
        """Non-root scopes that actually hold packages."""
        return [s for s in self.scopes[1:] if s.packages]

    def dev_only(self) -> Set[int]:
        """Handles reachable only through devDependencies."""
        prod = self._reachable([h for h, dev in self.roots if not dev])
        return set(range(len(self.packages))) - prod

    def _reachable(self, starts: List[int]) -> Set[int]:
        seen: Set[int] = set()
        stack = list(starts)
        while stack:
            handle = stack.pop()
            if handle in seen:
                continue
            seen.add(handle)
            stack.extend(self.edges.get(handle, ()))
        return seen

    def postorder(self, include_dev: bool = True) -> List[int]:
        """Dependencies before dependents, roots in manifest order.

        Cycles are cut at the first revisit, so in ``A -> B -> A`` B comes first.
        """
        order: List[int] = []
        entered: Set[int] = set()
        starts = [h for h, dev in self.roots if include_dev or not dev]
        for start in starts:
            if start in entered:
                continue
            entered.add(start)
            stack = [(start, iter(self.edges.get(start, ())))]
            while stack:
                handle, children = stack[-1]
                for child in children:
                    if child not in entered:
                        entered.add(child)
                        stack.append((child, iter(self.edges.get(child, ()))))
                        break
                else:
                    stack.pop()
                    order.append(handle)
        return order
