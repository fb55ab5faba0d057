"""Version range parsing and npm-compatible matching."""

from .models import RangeKind, VersionRange
from .npm import satisfies, select_version, sort_versions
from .parser import parse_range

__all__ = [
    "RangeKind",
    "VersionRange",
    "parse_range",
    "satisfies",
    "select_version",
    "sort_versions",
]
