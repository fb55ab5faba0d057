"""Executable links in ``node_modules/.bin``."""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Dict, List

from common.errors import FileSystemError
from common.fsutil import remove_path

logger = logging.getLogger(__name__)

_CMD_SHIM = '@ECHO off\r\nnode "%~dp0\\{target}" %*\r\n'


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH | stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)


def link_bins(package_dir: Path, entries: Dict[str, str], bin_dir: Path) -> List[str]:
    """Expose ``entries`` (command -> path inside the package) in ``bin_dir``.

    Entries pointing outside the package or at missing files are skipped.
    Returns the command names linked.
    """
    package_dir = Path(package_dir)
    bin_dir = Path(bin_dir)
    linked: List[str] = []
    if not entries:
        return linked
    try:
        bin_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FileSystemError(f"cannot create {bin_dir}: {exc}") from exc

    root = package_dir.resolve()
    for command, relative in sorted(entries.items()):
        target = package_dir / relative
        resolved = target.resolve()
        if root not in resolved.parents or not resolved.is_file():
            logger.warning("%s: bin '%s' points at missing or foreign file %s", package_dir.name, command, relative)
            continue
        link = bin_dir / command
        try:
            if link.exists() or link.is_symlink():
                remove_path(link)
            _make_executable(resolved)
            if os.name == "nt":
                shim = bin_dir / f"{command}.cmd"
                rel = os.path.relpath(target, bin_dir)
                shim.write_text(_CMD_SHIM.format(target=rel), encoding="utf-8")
            else:
                os.symlink(os.path.relpath(target, bin_dir), link)
        except OSError as exc:
            raise FileSystemError(f"cannot link bin {command} for {package_dir.name}: {exc}") from exc
        linked.append(command)
    if linked:
        logger.debug("Linked %s into %s", ", ".join(linked), bin_dir)
    return linked
