"""npm range matching and version selection using semantic versioning."""

import re
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Sequence

import semantic_version

from .models import RangeKind, VersionRange


def parse_version(version: str) -> Optional[semantic_version.Version]:
    """Parse a strict semver string, returning None for anything invalid."""
    try:
        return semantic_version.Version(version)
    except (ValueError, TypeError):
        return None


def sort_versions(versions: Iterable[str], reverse: bool = False) -> List[str]:
    """Sort valid semver strings by precedence, dropping invalid ones."""
    parsed = [v for v in (parse_version(s) for s in versions) if v is not None]
    parsed.sort(reverse=reverse)
    return [str(v) for v in parsed]


def _normalize_spec(spec_str: str) -> str:
    """Normalize npm range syntax (hyphen, x-ranges) into SimpleSpec-compatible form."""
    s = spec_str.strip()

    # Hyphen ranges: "1.2.3 - 1.4.5" => ">=1.2.3,<=1.4.5"
    m = re.match(r'^\s*([0-9A-Za-z\.\-\+]+)\s+-\s+([0-9A-Za-z\.\-\+]+)\s*$', s)
    if m:
        left, right = m.group(1), m.group(2)
        return f">={left},<={right}"

    # x-ranges: 1.2.x or 1.x or 1.* -> convert to comparator pairs
    s2 = s.replace('*', 'x').lower()
    m = re.match(r'^\s*(\d+)\.(\d+)\.x\s*$', s2)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        return f">={major}.{minor}.0,<{major}.{minor + 1}.0"

    m = re.match(r'^\s*(\d+)(?:\.x)?(?:\.x)?\s*$', s2)
    if m:
        major = int(m.group(1))
        return f">={major}.0.0,<{major + 1}.0.0"

    return spec_str


@lru_cache(maxsize=1024)
def _compile(spec_str: str):
    """Prefer NpmSpec, falling back to a normalized SimpleSpec."""
    try:
        return semantic_version.NpmSpec(spec_str)
    except ValueError:
        try:
            return semantic_version.SimpleSpec(_normalize_spec(spec_str))
        except ValueError:
            return None


def is_valid_range(rng: VersionRange) -> bool:
    """True when the expression can be evaluated against registry versions."""
    if rng.kind is RangeKind.RANGE:
        return _compile(rng.raw) is not None
    return rng.kind is not RangeKind.UNSUPPORTED


def satisfies(
    version: str,
    rng: VersionRange,
    dist_tags: Optional[Dict[str, str]] = None,
) -> bool:
    """Check one concrete version against a range.

    ``workspace:`` ranges are satisfied by anything; the local package wins
    regardless of its version. Tags are checked against ``dist_tags``; when
    those are unknown (None) any version passes, except ``latest`` which
    then accepts any stable release.
    """
    if rng.kind is RangeKind.WORKSPACE:
        return True
    if rng.kind is RangeKind.UNSUPPORTED:
        return False

    ver = parse_version(version)
    if ver is None:
        return False

    if rng.kind is RangeKind.EXACT:
        return ver == semantic_version.Version(rng.normalized)
    if rng.kind is RangeKind.TAG:
        if rng.normalized == "latest" and not (dist_tags and "latest" in dist_tags):
            return not ver.prerelease
        if dist_tags is None:
            return True
        return version == dist_tags.get(rng.normalized)

    # Skip pre-releases unless explicitly allowed
    if ver.prerelease and not rng.include_prerelease:
        return False
    if rng.kind is RangeKind.ANY:
        return True

    spec = _compile(rng.raw)
    if spec is None:
        return False
    return spec.match(ver)


def select_version(
    candidates: Sequence[str],
    ranges: Sequence[VersionRange],
    dist_tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Pick the highest candidate that satisfies every range, or None."""
    for version in sort_versions(candidates, reverse=True):
        if all(satisfies(version, rng, dist_tags) for rng in ranges):
            return version
    return None
