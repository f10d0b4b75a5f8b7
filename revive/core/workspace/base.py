"""Workspace backend contract and path safety.

A workspace is the isolated filesystem + execution environment a project
is analyzed and built in. Backends implement the raw operations; the
WorkspaceManager adds idempotent provisioning, the handle arena and
best-effort teardown on top.
"""

import ntpath
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import UnsafePathError

# Directory names left out of tree snapshots
SNAPSHOT_EXCLUDES = frozenset({
    ".git", "node_modules", ".next", "dist", "build", "coverage",
    "__pycache__", ".venv", ".turbo", ".cache",
})


@dataclass
class WorkspaceHandle:
    """Opaque reference to a provisioned workspace."""

    project_id: str
    backend: str                       # local | sandbox
    root: str                          # directory (local) or remote work dir
    sandbox_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FileWrite:
    path: str
    content: str


def safe_relative_path(path: str) -> str:
    """Validate a workspace-relative path and return it normalized.

    Rejects absolute paths (POSIX or Windows drive), any ``..`` segment and
    null bytes before the path reaches a backend.

    Raises:
        UnsafePathError: Path is not a safe relative path.
    """
    if not isinstance(path, str) or not path.strip():
        raise UnsafePathError("Path must be a non-empty string")
    if "\x00" in path:
        raise UnsafePathError("Path contains a null byte")
    if path.startswith(("/", "\\")) or ntpath.splitdrive(path)[0]:
        raise UnsafePathError(f"Absolute paths are not allowed: {path}")

    parts = path.replace("\\", "/").split("/")
    if any(part == ".." for part in parts):
        raise UnsafePathError(f"Path escapes the workspace: {path}")

    normalized = posixpath.normpath("/".join(parts))
    if normalized in (".", ""):
        raise UnsafePathError(f"Path does not name a file: {path}")
    return normalized


class WorkspaceBackend(ABC):
    """Raw workspace operations for one provider."""

    name = "base"

    @abstractmethod
    def find_existing(self, project_id: str, sandbox_id: Optional[str] = None) -> Optional[WorkspaceHandle]:
        """Reconnect to an initialized workspace (marker present), else None."""

    @abstractmethod
    def create(self, project_id: str, source_url: Optional[str]) -> WorkspaceHandle:
        """Create a workspace, clone the source and write the marker."""

    @abstractmethod
    def execute(self, handle: WorkspaceHandle, command: str, cwd: Optional[str] = None,
                timeout: Optional[float] = None) -> str:
        """Run a command to completion and return its combined output."""

    @abstractmethod
    def start_background(self, handle: WorkspaceHandle, name: str, command: str,
                         cwd: Optional[str] = None) -> None:
        """Start a detached, named long-running process."""

    @abstractmethod
    def write_file(self, handle: WorkspaceHandle, path: str, content: str) -> None:
        ...

    @abstractmethod
    def read_file(self, handle: WorkspaceHandle, path: str) -> str:
        ...

    @abstractmethod
    def list_files(self, handle: WorkspaceHandle) -> List[str]:
        ...

    @abstractmethod
    def preview_link(self, handle: WorkspaceHandle, port: int) -> str:
        ...

    @abstractmethod
    def stop(self, handle: WorkspaceHandle) -> None:
        """Stop running processes; keep state for a later resume."""

    @abstractmethod
    def destroy(self, handle: WorkspaceHandle) -> None:
        """Release every resource held by the workspace."""
