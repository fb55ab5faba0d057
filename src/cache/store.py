"""Content-addressed, integrity-checked package store shared by every project.

Layout::

    <root>/packages/<name>/<version>/<algorithm>-<hexdigest>/package/...
    <root>/packages/<name>/<version>/<algorithm>-<hexdigest>/meta.json
    <root>/tmp/                      extraction scratch space

An entry directory only ever appears through a rename of a fully extracted
scratch directory, so readers never observe a partial tree. Entries are
never modified afterwards; ``clean`` is the only removal path.
"""

from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple

from constants import default_cache_dir
from common.errors import FileSystemError, IntegrityMismatch
from common.integrity import Integrity, compute, parse_integrity
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)

_META_FILE = "meta.json"
_TREE_DIR = "package"


@dataclass(frozen=True)
class CacheEntry:
    name: str
    version: str
    integrity: str
    path: Path  # extracted package tree


def _safe_name(name: str) -> str:
    return name.replace("/", "+")


def _key(integrity: Integrity) -> str:
    return f"{integrity.algorithm}-{integrity.hexdigest}"


def extract_tarball(data: bytes, dest: Path) -> int:
    """Extract a gzip tarball into ``dest``, stripping its top-level directory.

    Entries that would land outside ``dest``, links and special files are
    skipped. Returns the number of files written.
    """
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    written = 0
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
        for member in archive:
            parts = PurePosixPath(member.name.replace("\\", "/")).parts
            if len(parts) < 2 or parts[0] == "/":
                continue
            relative = parts[1:]
            if any(part in ("..", "") for part in relative):
                logger.warning("Skipping unsafe archive entry %s", member.name)
                continue
            target = dest.joinpath(*relative)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                source = archive.extractfile(member)
                if source is None:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, 0o755 if member.mode & 0o111 else 0o644)
                written += 1
            else:
                logger.debug("Skipping non-regular archive entry %s", member.name)
    return written


class PackageCache:
    """Machine-wide store of extracted packages keyed by (name, version, integrity)."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or default_cache_dir())

    @property
    def packages_dir(self) -> Path:
        return self.root / "packages"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    def _version_dir(self, name: str, version: str) -> Path:
        return self.packages_dir / _safe_name(name) / version

    @staticmethod
    def _entry(name: str, version: str, entry_dir: Path) -> Optional[CacheEntry]:
        meta_path = entry_dir / _META_FILE
        tree = entry_dir / _TREE_DIR
        if not (meta_path.is_file() and tree.is_dir()):
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return CacheEntry(name=name, version=version, integrity=str(meta.get("integrity", "")), path=tree)

    def lookup(self, name: str, version: str, integrity: str = "") -> Optional[CacheEntry]:
        """Return the cached tree for this key, or None.

        With no usable integrity any stored copy of the version is accepted.
        """
        expected = parse_integrity(integrity)
        version_dir = self._version_dir(name, version)
        if expected is not None:
            return self._entry(name, version, version_dir / _key(expected))
        if not version_dir.is_dir():
            return None
        for entry_dir in sorted(version_dir.iterdir()):
            found = self._entry(name, version, entry_dir)
            if found is not None:
                return found
        return None

    def store(self, name: str, version: str, integrity: str, data: bytes) -> CacheEntry:
        """Verify ``data`` and commit its extracted tree.

        Raises:
            IntegrityMismatch: the digest differs from ``integrity``; nothing is written.
            FileSystemError: the archive is unreadable or the cache is not writable.
        """
        expected = parse_integrity(integrity)
        if expected is None and integrity and integrity.strip():
            logger.warning(
                "%s@%s: no supported hash in integrity %r; storing unverified",
                name,
                version,
                integrity,
                extra=extra_context(event="cache", action="store", package=name, outcome="unverified"),
            )
        actual = compute(data, expected.algorithm if expected else None)
        if expected is not None and actual.digest != expected.digest:
            raise IntegrityMismatch(name, version, str(expected), str(actual))

        entry_dir = self._version_dir(name, version) / _key(actual)
        existing = self._entry(name, version, entry_dir)
        if existing is not None:
            return existing

        try:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{_safe_name(name)}-", dir=self.tmp_dir))
        except OSError as exc:
            raise FileSystemError(f"cache directory {self.root} is not writable: {exc}") from exc

        try:
            try:
                count = extract_tarball(data, scratch / _TREE_DIR)
            except (tarfile.TarError, EOFError, OSError) as exc:
                raise FileSystemError(f"cannot extract {name}@{version}: {exc}") from exc
            meta = {"name": name, "version": version, "integrity": str(actual)}
            (scratch / _META_FILE).write_text(json.dumps(meta, indent=2) + "\n", encoding="utf-8")
            entry_dir.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(scratch, entry_dir)
            except OSError as exc:
                # Another process committed the same key first.
                existing = self._entry(name, version, entry_dir)
                if existing is None:
                    raise FileSystemError(f"cannot commit cache entry {entry_dir}: {exc}") from exc
                return existing
        except OSError as exc:
            raise FileSystemError(f"cannot write cache entry for {name}@{version}: {exc}") from exc
        finally:
            if scratch.exists():
                shutil.rmtree(scratch, ignore_errors=True)

        logger.debug(
            "Cached %s@%s (%d files)",
            name,
            version,
            count,
            extra=extra_context(event="cache", action="store", package=name, outcome="success"),
        )
        return CacheEntry(name=name, version=version, integrity=str(actual), path=entry_dir / _TREE_DIR)

    def stats(self) -> Tuple[int, int]:
        """(entry count, total bytes) of everything stored."""
        entries = 0
        total = 0
        if not self.packages_dir.is_dir():
            return entries, total
        for meta_path in self.packages_dir.glob(f"*/*/*/{_META_FILE}"):
            entries += 1
            for path in meta_path.parent.rglob("*"):
                if path.is_file() and not path.is_symlink():
                    total += path.stat().st_size
        return entries, total

    def clean(self) -> int:
        """Remove every entry and scratch directory; returns the entry count removed."""
        removed, _ = self.stats()
        for path in (self.packages_dir, self.tmp_dir):
            if path.exists():
                try:
                    shutil.rmtree(path)
                except OSError as exc:
                    raise FileSystemError(f"cannot clean {path}: {exc}") from exc
        logger.info("Removed %d cached package(s) from %s", removed, self.root)
        return removed
