"""Local-directory workspace backend.

Workspace location: ``$WORKSPACE_ROOT/<project_id>/``. No provider
lifecycle; used for development, tests and single-host deployments.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..constants import WORKSPACE_MARKER
from ..errors import CommandError, CommandTimeoutError, UnsafePathError, WorkspaceUnavailableError
from .base import SNAPSHOT_EXCLUDES, WorkspaceBackend, WorkspaceHandle, safe_relative_path

logger = logging.getLogger(__name__)


class LocalWorkspaceBackend(WorkspaceBackend):
    """Workspaces as plain directories, commands via subprocess."""

    name = "local"

    def __init__(self, root: str, clone_timeout: float = 120.0, default_timeout: float = 600.0):
        self.root = Path(root).resolve()
        self.clone_timeout = clone_timeout
        self.default_timeout = default_timeout
        self._lock = threading.Lock()
        # project_id -> {name: Popen}
        self._processes: Dict[str, Dict[str, subprocess.Popen]] = {}

    def _path_for(self, project_id: str) -> Path:
        return self.root / str(project_id)

    def _resolve(self, handle: WorkspaceHandle, relative: Optional[str]) -> Path:
        """Map a workspace-relative path to disk.

        Symlinks are followed; the resolved target must stay under the
        resolved workspace root.
        """
        base = Path(handle.root).resolve()
        if not relative:
            return base
        target = (base / safe_relative_path(relative)).resolve()
        if not target.is_relative_to(base):
            raise UnsafePathError(f"Path resolves outside the workspace: {relative}")
        return target

    # ── Lifecycle ───────────────────────────────────────────────────────

    def find_existing(self, project_id: str, sandbox_id: Optional[str] = None) -> Optional[WorkspaceHandle]:
        path = self._path_for(project_id)
        if (path / WORKSPACE_MARKER).exists():
            logger.info(f"Reusing existing workspace at {path}")
            return WorkspaceHandle(project_id=str(project_id), backend=self.name, root=str(path))
        return None

    def create(self, project_id: str, source_url: Optional[str]) -> WorkspaceHandle:
        path = self._path_for(project_id)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if path.exists():
                # Left over from an interrupted clone (no marker)
                shutil.rmtree(path)
            if source_url:
                logger.info(f"Cloning {source_url} into {path}")
                result = subprocess.run(
                    ["git", "clone", "--depth", "1", source_url, str(path)],
                    capture_output=True,
                    text=True,
                    timeout=self.clone_timeout,
                )
                if result.returncode != 0:
                    raise CommandError(
                        f"git clone {source_url}", result.returncode,
                        (result.stdout or "") + (result.stderr or ""),
                    )
            else:
                path.mkdir(parents=True)
            (path / WORKSPACE_MARKER).write_text(str(project_id), encoding="utf-8")
        except subprocess.TimeoutExpired as e:
            raise WorkspaceUnavailableError(f"Workspace clone timed out: {e}")
        except OSError as e:
            raise WorkspaceUnavailableError(f"Workspace creation failed: {e}")

        logger.info(f"Workspace ready at {path}")
        return WorkspaceHandle(project_id=str(project_id), backend=self.name, root=str(path))

    def stop(self, handle: WorkspaceHandle) -> None:
        with self._lock:
            procs = self._processes.pop(handle.project_id, {})
        for name, proc in procs.items():
            self._terminate(name, proc)

    @staticmethod
    def _terminate(name: str, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.info(f"Stopping background process '{name}' (pid {proc.pid})")
        try:
            # Whole session: the shell and everything it spawned
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug(f"Process group {proc.pid} already gone")

    def destroy(self, handle: WorkspaceHandle) -> None:
        self.stop(handle)
        shutil.rmtree(handle.root, ignore_errors=False)
        logger.info(f"Workspace {handle.root} removed")

    # ── Commands ────────────────────────────────────────────────────────

    def execute(self, handle: WorkspaceHandle, command: str, cwd: Optional[str] = None,
                timeout: Optional[float] = None) -> str:
        workdir = self._resolve(handle, cwd)
        timeout = timeout or self.default_timeout
        logger.info(f"[{handle.project_id}] $ {command}")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=str(workdir),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = e.stdout or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            raise CommandTimeoutError(command, timeout, output)

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise CommandError(command, result.returncode, output)
        return output

    def start_background(self, handle: WorkspaceHandle, name: str, command: str,
                         cwd: Optional[str] = None) -> None:
        workdir = self._resolve(handle, cwd)
        with self._lock:
            previous = self._processes.get(handle.project_id, {}).pop(name, None)
        if previous is not None:
            self._terminate(name, previous)

        log_path = Path(handle.root) / f".{name}.log"
        with open(log_path, "ab") as log_file:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=str(workdir),
                stdout=log_file,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        with self._lock:
            self._processes.setdefault(handle.project_id, {})[name] = proc
        logger.info(f"[{handle.project_id}] Started '{name}' (pid {proc.pid}): {command}")

    # ── Files ───────────────────────────────────────────────────────────

    def write_file(self, handle: WorkspaceHandle, path: str, content: str) -> None:
        target = self._resolve(handle, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def read_file(self, handle: WorkspaceHandle, path: str) -> str:
        return self._resolve(handle, path).read_text(encoding="utf-8")

    def list_files(self, handle: WorkspaceHandle) -> List[str]:
        root = Path(handle.root)
        results: List[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in SNAPSHOT_EXCLUDES)
            rel_dir = Path(dirpath).relative_to(root)
            for filename in filenames:
                if filename == WORKSPACE_MARKER:
                    continue
                results.append((rel_dir / filename).as_posix())
        return sorted(results)

    def preview_link(self, handle: WorkspaceHandle, port: int) -> str:
        return f"http://localhost:{port}"
