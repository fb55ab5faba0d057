"""Registry collaborator contract and the typed shapes crossing it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Protocol


@dataclass(frozen=True)
class VersionRecord:
    """One published version as the resolver sees it."""

    version: str
    integrity: str
    tarball: str
    dependencies: Dict[str, str] = field(default_factory=dict, hash=False)


class RegistryClient(Protocol):
    """Metadata and tarball source.

    ``get_versions`` and ``get_dist_tags`` are metadata queries; the resolver
    avoids both entirely when a consistent lockfile is available.
    """

    def get_versions(self, name: str) -> List[VersionRecord]:
        """All published versions of ``name``; empty when the package is unknown."""
        ...

    def get_dist_tags(self, name: str) -> Dict[str, str]:
        """Tag name -> version (e.g. ``{"latest": "2.0.0"}``)."""
        ...

    def fetch_tarball(self, url: str) -> bytes:
        """Download one tarball in a single attempt; raises NetworkError."""
        ...
