"""InstallPlan: the graph flattened into dependency-first install steps."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Set, Tuple

from constants import Constants
from resolver.graph import ROOT_SCOPE, DependencyGraph, ResolvedPackage


@dataclass(frozen=True)
class InstallStep:
    """Fetch, extract, link and run scripts for one placed package."""

    handle: int
    package: ResolvedPackage
    target: Path
    bin_dir: Path  # the .bin of the scope holding the package
    path_dirs: Tuple[Path, ...]  # .bin dirs visible to its scripts, nearest first

    @property
    def needs_fetch(self) -> bool:
        return not self.package.is_workspace


class InstallPlan:
    """Steps in postorder; derived from a graph, never persisted."""

    def __init__(self, root: Path, steps: List[InstallStep]):
        self.root = Path(root)
        self.steps = steps
        self._handles = {s.handle for s in steps}

    @classmethod
    def from_graph(cls, graph: DependencyGraph, root: Path, include_dev: bool = True) -> "InstallPlan":
        root = Path(root)
        steps = []
        for handle in graph.postorder(include_dev=include_dev):
            package = graph.package(handle)
            home = graph.scope_of(handle)
            visible = graph.chain(graph.private_scope[handle])
            steps.append(
                InstallStep(
                    handle=handle,
                    package=package,
                    target=root / package.location,
                    bin_dir=root / home.path / Constants.BIN_DIR,
                    path_dirs=tuple(root / graph.scopes[sid].path / Constants.BIN_DIR for sid in visible),
                )
            )
        return cls(root, steps)

    def __iter__(self) -> Iterator[InstallStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def fetch_steps(self) -> List[InstallStep]:
        return [s for s in self.steps if s.needs_fetch]

    def scope_names(self, graph: DependencyGraph, scope_id: int = ROOT_SCOPE) -> Set[str]:
        """Names this plan places directly in one modules directory (the root by default)."""
        return {
            name
            for name, handle in graph.scopes[scope_id].packages.items()
            if handle in self._handles
        }
