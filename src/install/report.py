"""Structured outcome of one install, rendered by the CLI layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from constants import ExitCodes
from common.errors import CrabbyError, ScriptError


@dataclass
class InstallReport:
    installed: List[str] = field(default_factory=list)  # "name@version" in install order
    cache_hits: int = 0
    fetched: int = 0
    failed_scripts: List[ScriptError] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)  # packages that could not be installed
    fatal_error: Optional[CrabbyError] = None
    # location -> integrity computed while storing, for entries that had none
    integrities: Dict[str, str] = field(default_factory=dict)

    @property
    def installed_count(self) -> int:
        return len(self.installed)

    @property
    def ok(self) -> bool:
        return self.fatal_error is None

    @property
    def exit_code(self) -> ExitCodes:
        if self.fatal_error is not None:
            return self.fatal_error.exit_code
        if self.failed_scripts:
            return ExitCodes.EXIT_WARNINGS
        return ExitCodes.SUCCESS

    def summary(self) -> str:
        if self.fatal_error is not None:
            return f"install failed: {self.fatal_error}"
        text = (
            f"installed {self.installed_count} package(s) "
            f"({self.cache_hits} from cache, {self.fetched} downloaded)"
        )
        if self.failed_scripts:
            text += f"; {len(self.failed_scripts)} lifecycle script(s) failed"
        return text
