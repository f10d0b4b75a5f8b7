"""Tests for SandboxWorkspaceBackend against a mocked sandbox API."""

import json
import time

import httpx
import pytest

from revive.core.constants import WORKSPACE_MARKER
from revive.core.errors import CommandError, CommandTimeoutError, WorkspaceUnavailableError
from revive.core.workspace import SandboxWorkspaceBackend, WorkspaceHandle
from revive.core.workspace.sandbox import REMOTE_WORKDIR


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


class FakeSandboxApi:
    """Records requests and answers from a route table."""

    def __init__(self):
        self.requests = []
        self.exec_results = []
        self.state = "started"
        self.fail_status = None
        # path suffix -> status answered for that route only
        self.fail_routes = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.fail_status:
            return httpx.Response(self.fail_status, text="provider error")

        path = request.url.path
        for suffix, status in self.fail_routes.items():
            if path.endswith(suffix):
                return httpx.Response(status, text="route error")
        if request.method == "POST" and path == "/sandboxes":
            return httpx.Response(200, json={"id": "sb-1"})
        if request.method == "GET" and path == "/sandboxes/sb-1":
            return httpx.Response(200, json={"id": "sb-1", "state": self.state})
        if path.endswith("/process/execute"):
            result = self.exec_results.pop(0) if self.exec_results else {"exitCode": 0, "result": ""}
            return httpx.Response(200, json=result)
        if path.endswith("/preview/3000"):
            return httpx.Response(200, json={"url": "https://3000-sb-1.preview.test"})
        return httpx.Response(200, json={})

    def paths(self, method=None):
        return [p for m, p, _ in self.requests if method is None or m == method]


@pytest.fixture
def api():
    return FakeSandboxApi()


@pytest.fixture
def backend(api):
    client = httpx.Client(base_url="http://sandbox.test", transport=httpx.MockTransport(api))
    return SandboxWorkspaceBackend("http://sandbox.test", "key", client=client, default_timeout=60)


def _handle():
    return WorkspaceHandle(project_id="p1", backend="sandbox", root=REMOTE_WORKDIR, sandbox_id="sb-1")


class TestLifecycle:

    def test_create_disables_auto_stop_clones_and_marks(self, backend, api):
        handle = backend.create("p1", "https://git.example.com/shop.git")

        assert handle.sandbox_id == "sb-1"
        create_body = api.requests[0][2]
        assert create_body["autoStopInterval"] == 0
        assert create_body["labels"] == {"project_id": "p1"}
        assert "/sandboxes/sb-1/git/clone" in api.paths("POST")
        upload = [b for m, p, b in api.requests if p.endswith("/files/upload")][0]
        assert upload["path"] == f"{REMOTE_WORKDIR}/{WORKSPACE_MARKER}"

    def test_failed_clone_deletes_the_new_sandbox(self, backend, api):
        api.fail_routes = {"/git/clone": 503}

        with pytest.raises(WorkspaceUnavailableError):
            backend.create("p1", "https://git.example.com/shop.git")

        assert "/sandboxes/sb-1" in api.paths("DELETE")
        assert not [p for p in api.paths("POST") if p.endswith("/files/upload")]

    def test_failed_marker_deletes_the_new_sandbox(self, backend, api):
        api.fail_routes = {"/files/upload": 400}

        with pytest.raises(WorkspaceUnavailableError):
            backend.create("p1", None)

        assert api.paths("DELETE") == ["/sandboxes/sb-1"]

    def test_cleanup_failure_keeps_original_error(self, backend, api):
        api.fail_routes = {"/git/clone": 400, "/sandboxes/sb-1": 503}

        with pytest.raises(WorkspaceUnavailableError, match="400"):
            backend.create("p1", "https://git.example.com/shop.git")
        assert len(api.paths("DELETE")) == 3

    def test_find_existing_restarts_stopped_sandbox(self, backend, api):
        api.state = "stopped"

        handle = backend.find_existing("p1", sandbox_id="sb-1")

        assert handle is not None
        assert "/sandboxes/sb-1/start" in api.paths("POST")

    def test_find_existing_without_marker(self, backend, api):
        api.exec_results = [{"exitCode": 1, "result": ""}]

        assert backend.find_existing("p1", sandbox_id="sb-1") is None

    def test_find_existing_unknown_sandbox(self, backend, api):
        api.fail_status = 404

        assert backend.find_existing("p1", sandbox_id="sb-1") is None

    def test_provider_outage_is_unavailable(self, backend, api):
        api.fail_status = 503

        with pytest.raises(WorkspaceUnavailableError):
            backend.stop(_handle())
        assert len(api.requests) == 3


class TestCommands:

    def test_execute_returns_output(self, backend, api):
        api.exec_results = [{"exitCode": 0, "result": "ok\n"}]

        assert backend.execute(_handle(), "npm test", cwd="web") == "ok\n"
        assert api.requests[-1][2]["cwd"] == f"{REMOTE_WORKDIR}/web"

    def test_non_zero_exit(self, backend, api):
        api.exec_results = [{"exitCode": 2, "result": "1 failing"}]

        with pytest.raises(CommandError) as exc:
            backend.execute(_handle(), "npm test")
        assert exc.value.exit_code == 2
        assert exc.value.output == "1 failing"

    def test_timeout_exit_code(self, backend, api):
        api.exec_results = [{"exitCode": 124, "result": ""}]

        with pytest.raises(CommandTimeoutError):
            backend.execute(_handle(), "npm test")

    def test_list_files_strips_prefix_and_marker(self, backend, api):
        api.exec_results = [{"exitCode": 0, "result": f"./src/b.ts\n./{WORKSPACE_MARKER}\n./a.json\n"}]

        assert backend.list_files(_handle()) == ["a.json", "src/b.ts"]

    def test_preview_link(self, backend):
        assert backend.preview_link(_handle(), 3000) == "https://3000-sb-1.preview.test"

    def test_start_background_opens_session_and_runs_async(self, backend, api):
        backend.start_background(_handle(), "dev-server", "npm run dev", cwd="web")

        posts = [(p, b) for m, p, b in api.requests if m == "POST"]
        assert posts[0] == ("/sandboxes/sb-1/process/sessions", {"sessionId": "dev-server"})
        path, body = posts[1]
        assert path == "/sandboxes/sb-1/process/sessions/dev-server/exec"
        assert body == {"command": "npm run dev", "cwd": f"{REMOTE_WORKDIR}/web", "runAsync": True}

    def test_start_background_outage_is_unavailable(self, backend, api):
        api.fail_status = 502

        with pytest.raises(WorkspaceUnavailableError):
            backend.start_background(_handle(), "dev-server", "npm run dev")
