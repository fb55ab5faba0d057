"""Constants used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    CONNECTION_ERROR = 2
    FILE_ERROR = 1
    EXIT_WARNINGS = 3


class PackageSource(Enum):
    """Where a resolved package comes from.

    Args:
        Enum (string): Source kinds recorded in the graph and lockfile.
    """

    REGISTRY = "registry"
    WORKSPACE = "workspace"
    CACHE = "cache"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    MANIFEST_FILE = "package.json"
    LOCKFILE_FILE = "crabby.lock"
    PROJECT_CONFIG_FILE = "crabby.config.json"
    MODULES_DIR = "node_modules"
    BIN_DIR = ".bin"
    LOCKFILE_VERSION = 1
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for every registry request

    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_RETRY_MAX_DELAY_SEC = 5.0

    FETCH_CONCURRENCY = 16
    INTEGRITY_ALGORITHM = "sha512"
    SCRIPT_TIMEOUT_SEC = 600
    LIFECYCLE_SCRIPTS = ("preinstall", "install", "postinstall")

    CACHE_DIR: Optional[str] = None

    ENV_CONFIG = "CRABBY_CONFIG"
    ENV_REGISTRY = "CRABBY_REGISTRY"
    ENV_CACHE_DIR = "CRABBY_CACHE_DIR"
    ENV_LOG_LEVEL = "CRABBY_LOG_LEVEL"


# Weakest to strongest; when an integrity value lists several hashes the strongest wins.
INTEGRITY_ALGORITHMS = ("sha1", "sha256", "sha384", "sha512")


def _integrity_algorithm(value: Any) -> str:
    algorithm = str(value).strip().lower()
    if algorithm not in INTEGRITY_ALGORITHMS:
        raise ValueError(f"unsupported integrity algorithm: {value}")
    return algorithm


# Keys accepted in crabby.yml, mapped to the Constants attribute and a coercer.
_CONFIG_KEYS = {
    "registry": ("REGISTRY_URL_NPM", str),
    "request_timeout": ("REQUEST_TIMEOUT", int),
    "retry_max": ("HTTP_RETRY_MAX", int),
    "retry_base_delay": ("HTTP_RETRY_BASE_DELAY_SEC", float),
    "retry_max_delay": ("HTTP_RETRY_MAX_DELAY_SEC", float),
    "fetch_concurrency": ("FETCH_CONCURRENCY", int),
    "integrity_algorithm": ("INTEGRITY_ALGORITHM", _integrity_algorithm),
    "script_timeout": ("SCRIPT_TIMEOUT_SEC", int),
    "cache_dir": ("CACHE_DIR", str),
}


def _config_candidates() -> list:
    candidates = []
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path:
        candidates.append(env_path)
    candidates.append(os.path.join(os.getcwd(), "crabby.yml"))
    candidates.append(os.path.join(os.path.expanduser("~"), ".config", "crabby", "crabby.yml"))
    return candidates


def _load_yaml_config() -> Dict[str, Any]:
    """Return the first YAML config document found, or an empty dict."""
    import yaml  # pylint: disable=import-outside-toplevel

    for path in _config_candidates():
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)
            continue
        if isinstance(data, dict):
            return data
        logger.warning("Ignoring config %s: top level is not a mapping", path)
    return {}


def _apply_config_overrides(cfg: Dict[str, Any]) -> None:
    """Copy recognised config keys onto Constants, skipping bad values."""
    for key, (attr, coerce) in _CONFIG_KEYS.items():
        if key not in cfg or cfg[key] is None:
            continue
        try:
            setattr(Constants, attr, coerce(cfg[key]))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid config value for %s: %r", key, cfg[key])


def _apply_env_overrides() -> None:
    registry = os.environ.get(Constants.ENV_REGISTRY)
    if registry:
        Constants.REGISTRY_URL_NPM = registry
    cache_dir = os.environ.get(Constants.ENV_CACHE_DIR)
    if cache_dir:
        Constants.CACHE_DIR = cache_dir


def load_config() -> None:
    """Apply YAML config then environment overrides (highest precedence)."""
    _apply_config_overrides(_load_yaml_config())
    _apply_env_overrides()


def load_project_config(root: str) -> Dict[str, Any]:
    """Read crabby.config.json from a project root.

    A missing or malformed file yields the defaults rather than an error.
    """
    import json  # pylint: disable=import-outside-toplevel

    defaults = {"registry": Constants.REGISTRY_URL_NPM}
    path = os.path.join(root, Constants.PROJECT_CONFIG_FILE)
    if not os.path.isfile(path):
        return defaults
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring %s: %s", path, exc)
        return defaults
    if not isinstance(data, dict):
        return defaults
    registry = data.get("registry")
    if isinstance(registry, str) and registry.strip():
        defaults["registry"] = registry.strip()
    return defaults


def default_cache_dir() -> str:
    """Platform-appropriate shared cache directory."""
    if Constants.CACHE_DIR:
        return Constants.CACHE_DIR
    if os.name == "nt":
        base = os.environ.get("LOCALAPPDATA") or os.path.expanduser("~")
        return os.path.join(base, "crabby", "cache")
    return os.path.join(os.path.expanduser("~"), ".cache", "crabby")


load_config()
