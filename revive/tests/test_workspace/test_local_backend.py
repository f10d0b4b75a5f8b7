"""Tests for LocalWorkspaceBackend against a temporary directory."""

import os
import time
from pathlib import Path

import pytest

from revive.core.constants import WORKSPACE_MARKER
from revive.core.errors import CommandError, CommandTimeoutError, UnsafePathError
from revive.core.workspace import LocalWorkspaceBackend


@pytest.fixture
def backend(tmp_path):
    return LocalWorkspaceBackend(str(tmp_path / "workspaces"), default_timeout=30)


class TestLifecycle:

    def test_create_without_source_writes_marker(self, backend):
        handle = backend.create("p1", None)

        assert handle.backend == "local"
        assert (backend.root / "p1" / WORKSPACE_MARKER).exists()

    def test_find_existing_needs_marker(self, backend):
        assert backend.find_existing("p1") is None

        backend.create("p1", None)

        found = backend.find_existing("p1")
        assert found is not None
        assert found.root == str(backend.root / "p1")

    def test_create_clears_half_initialized_directory(self, backend):
        leftover = backend.root / "p1"
        leftover.mkdir(parents=True)
        (leftover / "partial.txt").write_text("x")

        backend.create("p1", None)

        assert not (leftover / "partial.txt").exists()

    def test_destroy_removes_directory(self, backend):
        handle = backend.create("p1", None)

        backend.destroy(handle)

        assert not (backend.root / "p1").exists()


class TestCommands:

    def test_execute_returns_output(self, backend):
        handle = backend.create("p1", None)

        assert backend.execute(handle, "echo hello").strip() == "hello"

    def test_non_zero_exit_raises_with_output(self, backend):
        handle = backend.create("p1", None)

        with pytest.raises(CommandError) as exc:
            backend.execute(handle, "echo broken && exit 3")
        assert exc.value.exit_code == 3
        assert "broken" in exc.value.output

    def test_timeout(self, backend):
        handle = backend.create("p1", None)

        with pytest.raises(CommandTimeoutError):
            backend.execute(handle, "sleep 5", timeout=0.2)

    def test_execute_in_subdirectory(self, backend):
        handle = backend.create("p1", None)
        backend.write_file(handle, "web/index.html", "<html>")

        assert backend.execute(handle, "ls", cwd="web").strip() == "index.html"


class TestFiles:

    def test_write_read_and_list(self, backend):
        handle = backend.create("p1", None)
        backend.write_file(handle, "src/app.ts", "export {}")
        backend.write_file(handle, "node_modules/dep/index.js", "x")
        backend.write_file(handle, ".git/HEAD", "ref")

        assert backend.read_file(handle, "src/app.ts") == "export {}"
        assert backend.list_files(handle) == ["src/app.ts"]

    def test_symlinked_directory_cannot_escape_workspace(self, backend, tmp_path):
        handle = backend.create("p1", None)
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, Path(handle.root) / "src")

        with pytest.raises(UnsafePathError):
            backend.write_file(handle, "src/evil.ts", "owned")
        assert not (outside / "evil.ts").exists()

    def test_symlinked_file_cannot_be_read_from_outside(self, backend, tmp_path):
        handle = backend.create("p1", None)
        secret = tmp_path / "secret.env"
        secret.write_text("TOKEN=1")
        os.symlink(secret, Path(handle.root) / ".env")

        with pytest.raises(UnsafePathError):
            backend.read_file(handle, ".env")

    def test_symlink_within_workspace_is_allowed(self, backend):
        handle = backend.create("p1", None)
        backend.write_file(handle, "packages/core/index.ts", "export {}")
        os.symlink(Path(handle.root) / "packages" / "core", Path(handle.root) / "core")

        assert backend.read_file(handle, "core/index.ts") == "export {}"


# ── Tests: Background processes ──────────────────────────────────────────


def _running(pid: int) -> bool:
    """Alive and not a zombie waiting to be reaped."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs procfs")
class TestBackgroundProcesses:

    def test_start_background_keeps_running(self, backend):
        handle = backend.create("p1", None)

        backend.start_background(handle, "dev-server", "sleep 30")

        proc = backend._processes["p1"]["dev-server"]
        assert proc.poll() is None
        backend.stop(handle)
        assert proc.wait(timeout=5) is not None

    def test_output_goes_to_named_log(self, backend):
        handle = backend.create("p1", None)

        backend.start_background(handle, "dev-server", "echo listening")

        log = Path(handle.root) / ".dev-server.log"
        assert _wait_for(lambda: log.exists() and "listening" in log.read_text())
        backend.stop(handle)

    def test_stop_kills_children_of_the_shell(self, backend):
        handle = backend.create("p1", None)
        pid_file = Path(handle.root) / "child.pid"

        backend.start_background(handle, "dev-server", "sleep 30 & echo $! > child.pid; wait")
        assert _wait_for(lambda: pid_file.exists() and pid_file.read_text().strip())
        child = int(pid_file.read_text())
        assert _running(child)

        backend.stop(handle)

        assert _wait_for(lambda: not _running(child))
        assert "p1" not in backend._processes

    def test_restart_under_same_name_replaces_process(self, backend):
        handle = backend.create("p1", None)
        backend.start_background(handle, "dev-server", "sleep 30")
        first = backend._processes["p1"]["dev-server"]

        backend.start_background(handle, "dev-server", "sleep 30")

        second = backend._processes["p1"]["dev-server"]
        assert second is not first
        assert first.wait(timeout=5) is not None
        assert second.poll() is None
        backend.stop(handle)

    def test_destroy_stops_processes(self, backend):
        handle = backend.create("p1", None)
        backend.start_background(handle, "dev-server", "sleep 30")
        proc = backend._processes["p1"]["dev-server"]

        backend.destroy(handle)

        assert proc.wait(timeout=5) is not None
