"""Workspace (monorepo member) discovery and linking."""

from workspace.linker import WorkspaceLinker, WorkspaceMember

__all__ = ["WorkspaceLinker", "WorkspaceMember"]
