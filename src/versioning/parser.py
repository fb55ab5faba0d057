"""Range-expression parsing for manifest dependency values."""

import re

import semantic_version

from .models import RangeKind, VersionRange

_ANY_SPECS = {"", "*", "x", "X"}
_TAG_RE = re.compile(r"^[A-Za-z][A-Za-z0-9._\-]*$")
_PRERELEASE_RE = re.compile(r"\d+\.\d+\.\d+-[0-9A-Za-z]")
_UNSUPPORTED_PREFIXES = (
    "file:", "link:", "git:", "git+", "http:", "https:", "github:", "npm:", "portal:",
)
WORKSPACE_PREFIX = "workspace:"


def _determine_include_prerelease(spec: str) -> bool:
    """A range opts into prereleases only by naming one explicitly."""
    return bool(_PRERELEASE_RE.search(spec))


def _as_exact(spec: str):
    candidate = spec.lstrip("=").strip()
    if candidate[:1] in ("v", "V"):
        candidate = candidate[1:]
    try:
        return str(semantic_version.Version(candidate))
    except ValueError:
        return None


def parse_range(raw: str) -> VersionRange:
    """Classify a dependency value such as ``^1.2.0``, ``latest`` or ``workspace:*``."""
    spec = (raw or "").strip()

    if spec in _ANY_SPECS:
        return VersionRange(raw=spec or "*", kind=RangeKind.ANY)
    if spec.startswith(WORKSPACE_PREFIX):
        return VersionRange(raw=spec, kind=RangeKind.WORKSPACE)
    if spec.lower().startswith(_UNSUPPORTED_PREFIXES) or "/" in spec:
        return VersionRange(raw=spec, kind=RangeKind.UNSUPPORTED)

    exact = _as_exact(spec)
    if exact is not None:
        return VersionRange(
            raw=spec,
            kind=RangeKind.EXACT,
            include_prerelease=_determine_include_prerelease(exact),
            normalized=exact,
        )

    if _TAG_RE.match(spec) and spec.lower() not in ("x",):
        return VersionRange(raw=spec, kind=RangeKind.TAG, normalized=spec)

    return VersionRange(
        raw=spec,
        kind=RangeKind.RANGE,
        include_prerelease=_determine_include_prerelease(spec),
    )
