"""Per-project execution environments (local directory or remote sandbox)."""

from .base import FileWrite, WorkspaceBackend, WorkspaceHandle, safe_relative_path
from .local import LocalWorkspaceBackend
from .manager import WorkspaceArena, WorkspaceManager, build_workspace_manager
from .sandbox import SandboxWorkspaceBackend

__all__ = [
    "FileWrite",
    "LocalWorkspaceBackend",
    "SandboxWorkspaceBackend",
    "WorkspaceArena",
    "WorkspaceBackend",
    "WorkspaceHandle",
    "WorkspaceManager",
    "build_workspace_manager",
    "safe_relative_path",
]
