"""Error taxonomy for resolution and installation.

Every error carries the exit code the CLI layer should report. Fatal errors
abort an install; ``ScriptError`` is recorded in the report instead and
``LockfileInconsistent`` only ever triggers a fresh resolution.
"""

from __future__ import annotations

from typing import Optional

from constants import ExitCodes


class CrabbyError(Exception):
    """Base class for every package-manager error."""

    exit_code: ExitCodes = ExitCodes.FILE_ERROR
    fatal: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedManifest(CrabbyError):
    """package.json is structurally invalid."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class UnsatisfiableRange(CrabbyError):
    """No available version satisfies every constraint reaching a name."""

    def __init__(self, name: str, ranges: list[str], reason: str = "") -> None:
        detail = reason or "no matching version"
        super().__init__(f"{name}@{' && '.join(ranges) or '*'}: {detail}")
        self.name = name
        self.ranges = ranges


class RegistryUnavailable(CrabbyError):
    """Registry metadata could not be retrieved within the retry budget."""

    exit_code = ExitCodes.CONNECTION_ERROR


class NetworkError(CrabbyError):
    """A tarball download failed within the retry budget."""

    exit_code = ExitCodes.CONNECTION_ERROR


class IntegrityMismatch(CrabbyError):
    """Downloaded bytes do not match the expected integrity digest."""

    def __init__(self, name: str, version: str, expected: str, actual: str) -> None:
        super().__init__(
            f"integrity mismatch for {name}@{version}: expected {expected}, got {actual}"
        )
        self.name = name
        self.version = version
        self.expected = expected
        self.actual = actual


class FileSystemError(CrabbyError):
    """Permission, disk-space or layout problems while writing files."""


class ScriptError(CrabbyError):
    """A lifecycle script exited non-zero or timed out."""

    exit_code = ExitCodes.EXIT_WARNINGS
    fatal = False

    def __init__(
        self,
        package: str,
        event: str,
        returncode: Optional[int],
        output: str = "",
    ) -> None:
        status = "timed out" if returncode is None else f"exited with code {returncode}"
        super().__init__(f"{package}: {event} script {status}")
        self.package = package
        self.event = event
        self.returncode = returncode
        self.output = output


class LockfileInconsistent(CrabbyError):
    """The lockfile no longer matches the manifest; resolve again."""

    fatal = False
