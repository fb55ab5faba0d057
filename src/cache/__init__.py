"""Shared package cache."""

from cache.store import CacheEntry, PackageCache, extract_tarball

__all__ = ["CacheEntry", "PackageCache", "extract_tarball"]
