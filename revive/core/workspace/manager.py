"""Workspace manager: provisioning, handle arena and teardown.

The arena maps project_id to an owned WorkspaceHandle. An entry is
inserted on create/reconnect and removed on every teardown path,
including failed ones, so a hit always means the workspace is usable.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Union

from .base import FileWrite, WorkspaceBackend, WorkspaceHandle, safe_relative_path

logger = logging.getLogger(__name__)


class WorkspaceArena:
    """Lock-guarded project_id -> WorkspaceHandle map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: Dict[str, WorkspaceHandle] = {}

    def get(self, project_id) -> Optional[WorkspaceHandle]:
        with self._lock:
            return self._handles.get(str(project_id))

    def insert(self, handle: WorkspaceHandle):
        with self._lock:
            self._handles[handle.project_id] = handle

    def remove(self, project_id) -> Optional[WorkspaceHandle]:
        with self._lock:
            return self._handles.pop(str(project_id), None)

    def __contains__(self, project_id) -> bool:
        with self._lock:
            return str(project_id) in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class WorkspaceManager:
    """Backend-agnostic workspace operations for pipeline phases."""

    def __init__(self, backend: WorkspaceBackend, arena: Optional[WorkspaceArena] = None):
        self.backend = backend
        self.arena = arena or WorkspaceArena()

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def provision(self, project_id, source_url: Optional[str] = None,
                  sandbox_id: Optional[str] = None) -> WorkspaceHandle:
        """Return a usable workspace for the project, creating it if needed."""
        pid = str(project_id)
        cached = self.arena.get(pid)
        if cached is not None:
            return cached

        handle = self.backend.find_existing(pid, sandbox_id=sandbox_id)
        if handle is None:
            handle = self.backend.create(pid, source_url)
        self.arena.insert(handle)
        return handle

    def execute(self, handle: WorkspaceHandle, command: str, cwd: Optional[str] = None,
                timeout: Optional[float] = None) -> str:
        if cwd:
            safe_relative_path(cwd)
        return self.backend.execute(handle, command, cwd=cwd, timeout=timeout)

    def start_background(self, handle: WorkspaceHandle, name: str, command: str,
                         cwd: Optional[str] = None) -> None:
        if cwd:
            safe_relative_path(cwd)
        self.backend.start_background(handle, name, command, cwd=cwd)

    def write_files(self, handle: WorkspaceHandle, files: Iterable[FileWrite]) -> List[str]:
        """Write files and return their normalized paths.

        Every path is validated before any write happens.
        """
        files = list(files)
        paths = [safe_relative_path(f.path) for f in files]
        for path, f in zip(paths, files):
            self.backend.write_file(handle, path, f.content)
        return paths

    def read_file(self, handle: WorkspaceHandle, path: str) -> str:
        return self.backend.read_file(handle, safe_relative_path(path))

    def list_files(self, handle: WorkspaceHandle) -> List[str]:
        return self.backend.list_files(handle)

    def preview_link(self, handle: WorkspaceHandle, port: int) -> str:
        return self.backend.preview_link(handle, port)

    def teardown(self, target: Union[WorkspaceHandle, str], destroy: bool = False) -> bool:
        """Stop (or destroy) a workspace. Never raises.

        Returns True when the backend call succeeded.
        """
        if isinstance(target, WorkspaceHandle):
            handle = target
            self.arena.remove(handle.project_id)
        else:
            handle = self.arena.remove(target)
            if handle is None:
                logger.debug(f"No tracked workspace for project {target}")
                return True

        action = "destroy" if destroy else "stop"
        try:
            if destroy:
                self.backend.destroy(handle)
            else:
                self.backend.stop(handle)
            logger.info(f"Workspace {action} complete for project {handle.project_id}")
            return True
        except Exception as e:
            logger.warning(f"Workspace {action} failed for project {handle.project_id}: {e}")
            return False


def build_workspace_manager(settings) -> WorkspaceManager:
    """Pick a backend from settings, degrading to local when unconfigured."""
    from .local import LocalWorkspaceBackend

    if settings.workspace_backend == "sandbox":
        if settings.sandbox_configured:
            from .sandbox import SandboxWorkspaceBackend
            backend = SandboxWorkspaceBackend(
                settings.sandbox_api_url,
                settings.sandbox_api_key,
                default_timeout=settings.command_timeout_seconds,
            )
            logger.info(f"Using sandbox workspaces at {settings.sandbox_api_url}")
            return WorkspaceManager(backend)
        logger.warning(
            "WORKSPACE_BACKEND=sandbox but SANDBOX_API_URL/SANDBOX_API_KEY missing, "
            "falling back to local workspaces"
        )

    backend = LocalWorkspaceBackend(
        settings.workspace_root,
        default_timeout=settings.command_timeout_seconds,
    )
    logger.info(f"Using local workspaces under {backend.root}")
    return WorkspaceManager(backend)
