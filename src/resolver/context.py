"""Per-invocation resolution state.

One ResolutionContext is created by each ``resolve`` call and threaded
through every step; nothing here is shared between resolutions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from manifest.lockfile import Lockfile
from registry.base import RegistryClient, VersionRecord
from resolver.graph import DependencyGraph

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    registry: Optional[RegistryClient]
    lockfile: Optional[Lockfile] = None
    graph: DependencyGraph = field(default_factory=DependencyGraph)
    metadata_queries: int = 0
    _versions: Dict[str, List[VersionRecord]] = field(default_factory=dict)
    _tags: Dict[str, Dict[str, str]] = field(default_factory=dict)

    def versions(self, name: str) -> List[VersionRecord]:
        """Registry versions of ``name``, fetched at most once per resolution."""
        if name not in self._versions:
            if self.registry is None:
                self._versions[name] = []
            else:
                self.metadata_queries += 1
                self._versions[name] = list(self.registry.get_versions(name))
                logger.debug("Fetched %d version(s) of %s", len(self._versions[name]), name)
        return self._versions[name]

    def dist_tags(self, name: str) -> Dict[str, str]:
        if name not in self._tags:
            if self.registry is None:
                self._tags[name] = {}
            else:
                self.metadata_queries += 1
                self._tags[name] = dict(self.registry.get_dist_tags(name))
        return self._tags[name]

    def known_dist_tags(self, name: str) -> Optional[Dict[str, str]]:
        """Tags already fetched for ``name``, without querying."""
        return self._tags.get(name)

    def record(self, name: str, version: str) -> Optional[VersionRecord]:
        for rec in self.versions(name):
            if rec.version == version:
                return rec
        return None
