"""Lifecycle script execution.

Scripts run one at a time through the platform shell with the package
directory as working directory. Each run is synchronous, captures its output
and is bounded by a timeout.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from constants import Constants
from common.errors import ScriptError
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 4000


@dataclass
class CommandResult:
    returncode: Optional[int]  # None when the command timed out
    output: str
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandExecutor(Protocol):
    """Runs one shell command; swapped out in tests."""

    def execute(
        self,
        command: str,
        *,
        cwd: str,
        env: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


class ShellExecutor:
    """Default executor: ``subprocess.run`` through the shell."""

    def execute(
        self,
        command: str,
        *,
        cwd: str,
        env: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> CommandResult:
        start = time.monotonic()
        try:
            r = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout or ""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", "replace")
            return CommandResult(returncode=None, output=partial, duration=time.monotonic() - start)
        return CommandResult(
            returncode=r.returncode,
            output=(r.stdout or "") + (r.stderr or ""),
            duration=time.monotonic() - start,
        )


def script_env(
    name: str, version: str, event: str, path_dirs: Sequence[Path], base: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """Environment for one lifecycle event: PATH gets every reachable ``.bin`` first."""
    env = dict(os.environ if base is None else base)
    prefix = os.pathsep.join(str(p) for p in path_dirs)
    current = env.get("PATH", "")
    env["PATH"] = f"{prefix}{os.pathsep}{current}" if current else prefix
    env["npm_package_name"] = name
    env["npm_package_version"] = version
    env["npm_lifecycle_event"] = event
    return env


class ScriptRunner:
    """Runs a package's lifecycle scripts in order, stopping at the first failure."""

    def __init__(self, executor: Optional[CommandExecutor] = None, timeout: Optional[float] = None):
        self.executor = executor or ShellExecutor()
        self.timeout = Constants.SCRIPT_TIMEOUT_SEC if timeout is None else timeout

    def run(
        self,
        package_dir: Path,
        name: str,
        version: str,
        scripts: Dict[str, str],
        path_dirs: Sequence[Path] = (),
    ) -> List[str]:
        """Run whichever lifecycle events ``scripts`` defines.

        Returns the events that succeeded.

        Raises:
            ScriptError: for the first event that failed or timed out.
        """
        completed = []
        for event in Constants.LIFECYCLE_SCRIPTS:
            command = scripts.get(event)
            if not command:
                continue
            logger.info("%s@%s: running %s script", name, version or "0.0.0", event)
            result = self.executor.execute(
                command,
                cwd=str(package_dir),
                env=script_env(name, version, event, path_dirs),
                timeout=self.timeout,
            )
            if not result.success:
                logger.warning(
                    "%s %s script failed",
                    name,
                    event,
                    extra=extra_context(
                        event="script",
                        outcome="failure",
                        package=name,
                        returncode=result.returncode,
                        duration_ms=round(result.duration * 1000, 1),
                    ),
                )
                raise ScriptError(name, event, result.returncode, result.output[-_OUTPUT_TAIL:])
            logger.debug("%s %s script finished in %.1fs", name, event, result.duration)
            completed.append(event)
        return completed
