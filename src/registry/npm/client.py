"""npm registry client: packument metadata and tarball downloads."""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import requests

from constants import Constants
from common.errors import NetworkError, RegistryUnavailable
from common.http_client import get_json, robust_get
from common.integrity import from_hex, parse_integrity
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from registry.base import VersionRecord
from versioning.npm import parse_version

logger = logging.getLogger(__name__)

PACKUMENT_HEADERS = {
    "Accept": "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"
}


def packument_url(base_url: str, name: str) -> str:
    """Registry URL for a package; scoped names keep '@' and escape the slash."""
    return base_url.rstrip("/") + "/" + urllib.parse.quote(name, safe="@")


def _integrity_of(dist: Dict[str, Any]) -> str:
    integrity = parse_integrity(dist.get("integrity"))
    if integrity is None and isinstance(dist.get("shasum"), str):
        integrity = from_hex("sha1", dist["shasum"])
    return str(integrity) if integrity else ""


def parse_packument(name: str, data: Dict[str, Any]) -> List[VersionRecord]:
    """Validate a packument into VersionRecords, dropping unusable versions."""
    records = []
    versions = data.get("versions")
    if not isinstance(versions, dict):
        return records
    for version, info in versions.items():
        if parse_version(version) is None or not isinstance(info, dict):
            logger.debug("Skipping invalid version %s@%s", name, version)
            continue
        dist = info.get("dist") or {}
        tarball = dist.get("tarball") if isinstance(dist, dict) else None
        if not isinstance(tarball, str) or not tarball:
            logger.debug("Skipping %s@%s without a tarball", name, version)
            continue
        deps = info.get("dependencies") or {}
        if not isinstance(deps, dict):
            deps = {}
        records.append(
            VersionRecord(
                version=version,
                integrity=_integrity_of(dist),
                tarball=tarball,
                dependencies={k: v for k, v in deps.items() if isinstance(v, str)},
            )
        )
    records.sort(key=lambda r: parse_version(r.version))
    return records


class NpmRegistryClient:
    """RegistryClient backed by an npm-compatible HTTP registry."""

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.base_url = base_url or Constants.REGISTRY_URL_NPM
        self._session = session or requests.Session()
        self._packuments: Dict[str, Dict[str, Any]] = {}

    def _packument(self, name: str) -> Dict[str, Any]:
        if name in self._packuments:
            return self._packuments[name]

        url = packument_url(self.base_url, name)
        with Timer() as timer:
            try:
                status_code, _, data = get_json(url, session=self._session, headers=PACKUMENT_HEADERS)
            except NetworkError as exc:
                logger.error(
                    "Registry metadata request failed",
                    extra=extra_context(
                        event="http_error",
                        outcome="exception",
                        target=safe_url(url),
                        package=name,
                    ),
                )
                raise RegistryUnavailable(f"cannot fetch metadata for {name}: {exc}") from exc

        if status_code == 404:
            logger.warning(
                "Package not found in registry: %s",
                name,
                extra=extra_context(event="http_response", status_code=404, package=name),
            )
            data = {}
        elif status_code != 200 or not isinstance(data, dict):
            raise RegistryUnavailable(
                f"unexpected registry response for {name} (status {status_code})"
            )
        elif is_debug_enabled(logger):
            logger.debug(
                "Packument received",
                extra=extra_context(
                    event="http_response",
                    outcome="success",
                    duration_ms=timer.duration_ms(),
                    package=name,
                ),
            )

        self._packuments[name] = data
        return data

    def get_versions(self, name: str) -> List[VersionRecord]:
        return parse_packument(name, self._packument(name))

    def get_dist_tags(self, name: str) -> Dict[str, str]:
        tags = self._packument(name).get("dist-tags") or {}
        if not isinstance(tags, dict):
            return {}
        return {k: v for k, v in tags.items() if isinstance(v, str)}

    def fetch_tarball(self, url: str) -> bytes:
        status_code, _, body = robust_get(url, session=self._session, attempts=1)
        if status_code != 200:
            raise NetworkError(f"tarball download failed for {safe_url(url)} (status {status_code})")
        return body
