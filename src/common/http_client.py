"""Shared HTTP helpers used by the registry client.

Encapsulates timeout/retry handling and DEBUG traces so callers only deal
with status codes, bodies and the error taxonomy.
"""
from __future__ import annotations

import json
import logging
import urllib.parse
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.errors import NetworkError
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.retry import retry_call

logger = logging.getLogger(__name__)


class _RetryableStatus(Exception):
    """Raised internally for 5xx responses so they share the retry path."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"server error {status_code}")
        self.status_code = status_code


def validate_url_scheme(url: str) -> None:
    """Reject anything that is not plain http(s)."""
    scheme = urllib.parse.urlsplit(url).scheme.lower()
    if scheme not in ("http", "https"):
        raise NetworkError(f"refusing to fetch non-http URL: {safe_url(url)}")


def _get_once(
    session: requests.Session,
    url: str,
    headers: Optional[Dict[str, str]],
) -> Tuple[int, Dict[str, str], bytes]:
    safe_target = safe_url(url)
    with Timer() as t:
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="http_client",
                    action="GET",
                    target=safe_target,
                ),
            )
        response = session.get(url, timeout=Constants.REQUEST_TIMEOUT, headers=headers)
    if response.status_code >= 500:
        raise _RetryableStatus(response.status_code)
    if is_debug_enabled(logger):
        logger.debug(
            "HTTP response ok",
            extra=extra_context(
                event="http_response",
                component="http_client",
                action="GET",
                outcome="success",
                status_code=response.status_code,
                duration_ms=t.duration_ms(),
                target=safe_target,
            ),
        )
    return response.status_code, dict(response.headers), response.content


def robust_get(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    headers: Optional[Dict[str, str]] = None,
    attempts: Optional[int] = None,
) -> Tuple[int, Dict[str, str], bytes]:
    """GET with timeout and bounded retries for timeouts, connection errors and 5xx.

    Returns:
        Tuple of (status_code, headers_dict, body_bytes)

    Raises:
        NetworkError: when every attempt failed.
    """
    validate_url_scheme(url)
    http = session or requests.Session()
    try:
        return retry_call(
            lambda: _get_once(http, url, headers),
            retry_on=(requests.Timeout, requests.ConnectionError, _RetryableStatus),
            attempts=attempts,
            context=f"GET {safe_url(url)}",
        )
    except requests.Timeout as exc:
        raise NetworkError(
            f"request to {safe_url(url)} timed out after {Constants.REQUEST_TIMEOUT} seconds"
        ) from exc
    except _RetryableStatus as exc:
        raise NetworkError(f"{safe_url(url)} answered {exc.status_code}") from exc
    except requests.RequestException as exc:  # includes ConnectionError
        raise NetworkError(f"connection error for {safe_url(url)}: {exc}") from exc


def get_json(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Tuple[int, Dict[str, str], Optional[Any]]:
    """Perform GET request and parse JSON response.

    Returns:
        Tuple of (status_code, headers_dict, parsed_json_or_none)
    """
    status_code, response_headers, body = robust_get(url, session=session, headers=headers)
    if status_code == 200 and body:
        try:
            return status_code, response_headers, json.loads(body)
        except ValueError:
            logger.warning(
                "JSON decode error",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    action="get_json",
                    outcome="json_decode_error",
                    status_code=status_code,
                    target=safe_url(url),
                ),
            )
            return status_code, response_headers, None
    return status_code, response_headers, None
