"""Workspace discovery and in-place linking of local packages."""

from __future__ import annotations

import glob
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from constants import Constants
from common.errors import FileSystemError, MalformedManifest
from common.fsutil import remove_path
from manifest.model import Manifest, load_manifest

logger = logging.getLogger(__name__)

# Windows: "A required privilege is not held by the client."
_ERROR_PRIVILEGE_NOT_HELD = 1314


@dataclass(frozen=True)
class WorkspaceMember:
    name: str
    version: str
    path: Path
    manifest: Manifest = field(compare=False, hash=False, repr=False)


def _expand(root: Path, pattern: str) -> List[Path]:
    full = os.path.join(str(root), pattern, Constants.MANIFEST_FILE)
    return [Path(p).parent.resolve() for p in sorted(glob.glob(full, recursive=True))]


class WorkspaceLinker:
    """Maps workspace member names to their directories.

    Members are found by expanding the root manifest's ``workspaces`` globs;
    ``!pattern`` entries exclude matches. There is no deduplication of
    dependencies shared by several members.
    """

    def __init__(self, root: Path, patterns: Iterable[str]):
        self.root = Path(root).resolve()
        self.patterns = list(patterns)
        self._members: Optional[Dict[str, WorkspaceMember]] = None

    @classmethod
    def from_manifest(cls, root: Path, manifest: Manifest) -> "WorkspaceLinker":
        return cls(root, manifest.workspaces)

    def discover(self) -> Dict[str, WorkspaceMember]:
        if self._members is not None:
            return self._members

        included: List[Path] = []
        excluded = set()
        for pattern in self.patterns:
            if pattern.startswith("!"):
                excluded.update(_expand(self.root, pattern[1:]))
            else:
                included.extend(_expand(self.root, pattern))

        members: Dict[str, WorkspaceMember] = {}
        for pkg_dir in included:
            if pkg_dir in excluded or pkg_dir == self.root or Constants.MODULES_DIR in pkg_dir.parts:
                continue
            try:
                manifest = load_manifest(pkg_dir / Constants.MANIFEST_FILE)
            except MalformedManifest as exc:
                logger.warning("Skipping workspace %s: %s", pkg_dir, exc)
                continue
            if manifest.name in members:
                if members[manifest.name].path != pkg_dir:
                    logger.warning(
                        "Workspace name %s declared twice (%s, %s); keeping the first",
                        manifest.name, members[manifest.name].path, pkg_dir,
                    )
                continue
            members[manifest.name] = WorkspaceMember(
                name=manifest.name,
                version=manifest.version or "0.0.0",
                path=pkg_dir,
                manifest=manifest,
            )

        logger.info("Found %d workspace package(s)", len(members))
        self._members = members
        return members

    def member(self, name: str) -> Optional[WorkspaceMember]:
        return self.discover().get(name)

    def resolve(self, name: str) -> Optional[Path]:
        found = self.member(name)
        return found.path if found else None

    def relative_path(self, name: str) -> str:
        found = self.member(name)
        if found is None:
            return ""
        return os.path.relpath(found.path, self.root).replace(os.sep, "/")

    def link(self, target: Path, link_path: Path) -> None:
        """Point ``link_path`` at a member directory, replacing whatever is there."""
        link_path = Path(link_path)
        try:
            if link_path.exists() or link_path.is_symlink():
                remove_path(link_path)
            link_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileSystemError(f"cannot prepare {link_path}: {exc}") from exc

        relative = os.path.relpath(target, link_path.parent)
        try:
            os.symlink(relative, link_path, target_is_directory=True)
        except OSError as exc:
            if getattr(exc, "winerror", None) != _ERROR_PRIVILEGE_NOT_HELD:
                raise FileSystemError(f"failed to link {link_path} -> {target}: {exc}") from exc
            logger.warning("Symlink failed, trying junction for %s", link_path)
            result = subprocess.run(
                ["cmd", "/C", "mklink", "/J", str(link_path), str(target)],
                capture_output=True,
                text=True,
                check=False,
            )
            if result.returncode != 0:
                raise FileSystemError(
                    f"failed to create junction for {link_path}: {result.stderr.strip()}"
                ) from exc
        logger.debug("Linked workspace %s -> %s", link_path, target)

    def link_all(self, modules_dir: Path, skip: Iterable[str] = ()) -> List[str]:
        """Link every member not in ``skip`` into ``modules_dir``; returns linked names."""
        skipped = set(skip)
        linked = []
        for name, found in sorted(self.discover().items()):
            if name in skipped:
                continue
            self.link(found.path, Path(modules_dir) / name)
            linked.append(name)
        return linked
