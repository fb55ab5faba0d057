"""npm registry support."""

from registry.npm.client import NpmRegistryClient, packument_url, parse_packument

__all__ = ["NpmRegistryClient", "packument_url", "parse_packument"]
