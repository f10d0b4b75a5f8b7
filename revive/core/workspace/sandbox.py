"""Remote sandbox workspace backend (Daytona-style REST API).

Each project gets an ephemeral sandbox created with auto-stop disabled,
since build phases can run longer than the provider's idle timeout.
Transport failures and 5xx answers are retried with exponential backoff
and then surfaced as WorkspaceUnavailableError.
"""

import logging
import posixpath
import shlex
from typing import Any, Dict, List, Optional

import backoff
import httpx

from ..constants import WORKSPACE_MARKER
from ..errors import CommandError, CommandTimeoutError, WorkspaceUnavailableError
from .base import SNAPSHOT_EXCLUDES, WorkspaceBackend, WorkspaceHandle, safe_relative_path

logger = logging.getLogger(__name__)

REMOTE_WORKDIR = "/home/daytona/workspace"


class _RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"Sandbox API error {response.status_code}: {response.text[:500]}")
        self.response = response


class SandboxWorkspaceBackend(WorkspaceBackend):
    """Workspaces as remote sandboxes driven over HTTP."""

    name = "sandbox"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        client: Optional[httpx.Client] = None,
        default_timeout: float = 600.0,
        resources: Optional[Dict[str, int]] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.default_timeout = default_timeout
        self.resources = resources or {"cpu": 2, "memory": 4, "disk": 8}
        self._client = client or httpx.Client(
            base_url=self.api_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            timeout=httpx.Timeout(30.0, read=default_timeout + 30.0),
        )

    # ── HTTP ────────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._send(method, path, **kwargs)
        except httpx.TransportError as e:
            raise WorkspaceUnavailableError(f"Sandbox API unreachable: {e}")
        except _RetryableStatus as e:
            raise WorkspaceUnavailableError(str(e))

    @backoff.on_exception(
        backoff.expo,
        (httpx.TransportError, _RetryableStatus),
        max_tries=3,
        max_time=60,
        on_backoff=lambda details: logger.warning(
            f"Sandbox API retry {details['tries']}/3 after {details['wait']:.1f}s"
        ),
    )
    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = self._client.request(method, path, **kwargs)
        if response.status_code >= 500:
            raise _RetryableStatus(response)
        if response.status_code >= 400:
            raise WorkspaceUnavailableError(
                f"Sandbox API error {response.status_code}: {response.text[:500]}"
            )
        return response

    @staticmethod
    def _workdir(handle: WorkspaceHandle, cwd: Optional[str]) -> str:
        if not cwd:
            return handle.root
        return posixpath.join(handle.root, safe_relative_path(cwd))

    def _run(self, handle: WorkspaceHandle, command: str, workdir: str,
             timeout: Optional[float]) -> Dict[str, Any]:
        # Not retried: a command may have side effects
        timeout = timeout or self.default_timeout
        try:
            response = self._client.post(
                f"/sandboxes/{handle.sandbox_id}/process/execute",
                json={"command": command, "cwd": workdir, "timeout": int(timeout)},
                timeout=httpx.Timeout(30.0, read=timeout + 30.0),
            )
        except httpx.TimeoutException:
            raise CommandTimeoutError(command, timeout)
        except httpx.TransportError as e:
            raise WorkspaceUnavailableError(f"Sandbox API unreachable: {e}")
        if response.status_code >= 400:
            raise WorkspaceUnavailableError(
                f"Sandbox API error {response.status_code}: {response.text[:500]}"
            )
        return response.json()

    # ── Lifecycle ───────────────────────────────────────────────────────

    def find_existing(self, project_id: str, sandbox_id: Optional[str] = None) -> Optional[WorkspaceHandle]:
        if not sandbox_id:
            return None
        try:
            info = self._request("GET", f"/sandboxes/{sandbox_id}").json()
        except WorkspaceUnavailableError as e:
            logger.info(f"Sandbox {sandbox_id} not reusable: {e}")
            return None

        if info.get("state") in ("stopped", "archived"):
            self._request("POST", f"/sandboxes/{sandbox_id}/start")

        handle = WorkspaceHandle(
            project_id=str(project_id), backend=self.name,
            root=REMOTE_WORKDIR, sandbox_id=sandbox_id,
        )
        marker = self._run(handle, f"test -f {WORKSPACE_MARKER}", REMOTE_WORKDIR, 30)
        if marker.get("exitCode") != 0:
            return None
        logger.info(f"Reconnected to sandbox {sandbox_id} for project {project_id}")
        return handle

    def create(self, project_id: str, source_url: Optional[str]) -> WorkspaceHandle:
        data = self._request(
            "POST",
            "/sandboxes",
            json={
                "language": "javascript",
                "autoStopInterval": 0,
                "resources": self.resources,
                "labels": {"project_id": str(project_id)},
            },
        ).json()
        sandbox_id = data["id"]
        handle = WorkspaceHandle(
            project_id=str(project_id), backend=self.name,
            root=REMOTE_WORKDIR, sandbox_id=sandbox_id,
        )
        logger.info(f"Created sandbox {sandbox_id} for project {project_id}")

        try:
            if source_url:
                self._request(
                    "POST",
                    f"/sandboxes/{sandbox_id}/git/clone",
                    json={"url": source_url, "path": REMOTE_WORKDIR},
                )
            else:
                self.execute(handle, f"mkdir -p {REMOTE_WORKDIR}", cwd=None)
            self.write_file(handle, WORKSPACE_MARKER, str(project_id))
        except (WorkspaceUnavailableError, CommandError) as e:
            # The caller never receives this sandbox
            logger.error(f"Sandbox {sandbox_id} setup failed, deleting it: {e}")
            self._discard(sandbox_id)
            raise
        return handle

    def _discard(self, sandbox_id: str) -> None:
        try:
            self._request("DELETE", f"/sandboxes/{sandbox_id}")
        except WorkspaceUnavailableError as e:
            logger.warning(f"Could not delete half-created sandbox {sandbox_id}: {e}")

    def stop(self, handle: WorkspaceHandle) -> None:
        self._request("POST", f"/sandboxes/{handle.sandbox_id}/stop")
        logger.info(f"Sandbox {handle.sandbox_id} stopped")

    def destroy(self, handle: WorkspaceHandle) -> None:
        self._request("DELETE", f"/sandboxes/{handle.sandbox_id}")
        logger.info(f"Sandbox {handle.sandbox_id} destroyed")

    # ── Commands ────────────────────────────────────────────────────────

    def execute(self, handle: WorkspaceHandle, command: str, cwd: Optional[str] = None,
                timeout: Optional[float] = None) -> str:
        timeout = timeout or self.default_timeout
        logger.info(f"[{handle.sandbox_id}] $ {command}")
        data = self._run(handle, command, self._workdir(handle, cwd), timeout)

        output = data.get("output") or data.get("result") or ""
        exit_code = data.get("exitCode", 0)
        if exit_code == 124 or data.get("timedOut"):
            raise CommandTimeoutError(command, timeout, output)
        if exit_code != 0:
            raise CommandError(command, exit_code, output)
        return output

    def start_background(self, handle: WorkspaceHandle, name: str, command: str,
                         cwd: Optional[str] = None) -> None:
        base = f"/sandboxes/{handle.sandbox_id}/process/sessions"
        self._request("POST", base, json={"sessionId": name})
        self._request(
            "POST",
            f"{base}/{name}/exec",
            json={"command": command, "cwd": self._workdir(handle, cwd), "runAsync": True},
        )
        logger.info(f"[{handle.sandbox_id}] Started session '{name}': {command}")

    # ── Files ───────────────────────────────────────────────────────────

    def write_file(self, handle: WorkspaceHandle, path: str, content: str) -> None:
        self._request(
            "POST",
            f"/sandboxes/{handle.sandbox_id}/files/upload",
            json={"path": posixpath.join(handle.root, safe_relative_path(path)), "content": content},
        )

    def read_file(self, handle: WorkspaceHandle, path: str) -> str:
        response = self._request(
            "GET",
            f"/sandboxes/{handle.sandbox_id}/files/download",
            params={"path": posixpath.join(handle.root, safe_relative_path(path))},
        )
        return response.text

    def list_files(self, handle: WorkspaceHandle) -> List[str]:
        prune = " -o ".join(f"-name {shlex.quote(d)}" for d in sorted(SNAPSHOT_EXCLUDES))
        output = self.execute(
            handle,
            f"find . \\( {prune} \\) -prune -o -type f -print",
            timeout=60,
        )
        files = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith("./"):
                line = line[2:]
            if line != WORKSPACE_MARKER:
                files.append(line)
        return sorted(files)

    def preview_link(self, handle: WorkspaceHandle, port: int) -> str:
        data = self._request("GET", f"/sandboxes/{handle.sandbox_id}/preview/{port}").json()
        return data["url"]
