"""Subresource-integrity style digests (``sha512-<base64>``).

The algorithm travels with every value, so lockfiles written with SHA-1
shasums and ones written with SHA-512 integrity strings both verify.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Optional

from constants import INTEGRITY_ALGORITHMS as ALGORITHMS, Constants


@dataclass(frozen=True)
class Integrity:
    algorithm: str
    digest: str  # base64

    def __str__(self) -> str:
        return f"{self.algorithm}-{self.digest}"

    @property
    def hexdigest(self) -> str:
        return base64.b64decode(self.digest).hex()


def parse_integrity(value: Optional[str]) -> Optional[Integrity]:
    """Pick the strongest supported hash from an SRI string, or None."""
    best: Optional[Integrity] = None
    for token in (value or "").split():
        algorithm, sep, digest = token.partition("-")
        algorithm = algorithm.lower()
        if not sep or algorithm not in ALGORITHMS or not digest:
            continue
        digest = digest.split("?", 1)[0]
        try:
            base64.b64decode(digest, validate=True)
        except (binascii.Error, ValueError):
            continue
        candidate = Integrity(algorithm, digest)
        if best is None or ALGORITHMS.index(algorithm) > ALGORITHMS.index(best.algorithm):
            best = candidate
    return best


def from_hex(algorithm: str, hexdigest: str) -> Optional[Integrity]:
    """Convert a legacy hex checksum (e.g. npm ``shasum``) to SRI form."""
    try:
        raw = bytes.fromhex(hexdigest.strip())
    except ValueError:
        return None
    return Integrity(algorithm, base64.b64encode(raw).decode("ascii"))


def compute(data: bytes, algorithm: Optional[str] = None) -> Integrity:
    algorithm = (algorithm or Constants.INTEGRITY_ALGORITHM).lower()
    if algorithm not in ALGORITHMS:
        raise ValueError(f"unsupported integrity algorithm: {algorithm}")
    digest = hashlib.new(algorithm, data).digest()
    return Integrity(algorithm, base64.b64encode(digest).decode("ascii"))
