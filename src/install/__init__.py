"""Install pipeline: fetch, extract, link and run lifecycle scripts."""

from install.bins import link_bins
from install.pipeline import Installer, materialize
from install.plan import InstallPlan, InstallStep
from install.report import InstallReport
from install.scripts import CommandResult, ScriptRunner, ShellExecutor

__all__ = [
    "CommandResult",
    "InstallPlan",
    "InstallReport",
    "InstallStep",
    "Installer",
    "ScriptRunner",
    "ShellExecutor",
    "link_bins",
    "materialize",
]
