"""Data models for version ranges."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RangeKind(Enum):
    """How a dependency's range expression is interpreted."""
    EXACT = "exact"
    RANGE = "range"
    ANY = "any"
    TAG = "tag"
    WORKSPACE = "workspace"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class VersionRange:
    """Normalized representation of a range expression and derived behavior flags."""
    raw: str
    kind: RangeKind
    include_prerelease: bool = False
    normalized: Optional[str] = None  # exact version or tag name, when applicable

    def __str__(self) -> str:
        return self.raw
