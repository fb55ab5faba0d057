"""Registry collaborator: the resolver's only view of remote packages."""

from registry.base import RegistryClient, VersionRecord

__all__ = ["RegistryClient", "VersionRecord"]
