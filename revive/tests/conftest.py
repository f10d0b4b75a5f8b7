"""Shared fixtures: a SQLite-backed DatabaseManager and wired pipeline parts."""

from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from revive.core.clients import GeneratedCode
from revive.core.db import DatabaseManager
from revive.core.events import EventBroadcaster, EventLog
from revive.core.pipeline import (
    PipelineService,
    PipelineStateMachine,
    ProjectProcessor,
    SliceBuildExecutor,
    SliceScheduler,
)
from revive.core.queue import JobQueue
from revive.core.workspace import WorkspaceHandle


@pytest.fixture
def db_manager(tmp_path):
    db = DatabaseManager(f"sqlite:///{tmp_path / 'revive.db'}")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def broadcaster():
    return EventBroadcaster(max_queue=100)


@pytest.fixture
def event_log(db_manager, broadcaster):
    log = EventLog(db_manager, broadcaster=broadcaster)
    yield log
    log.shutdown()


@pytest.fixture
def state(db_manager, event_log):
    return PipelineStateMachine(db_manager, event_log)


@pytest.fixture
def job_queue(db_manager):
    return JobQueue(db_manager, base_backoff=1.0)


@pytest.fixture
def user_id():
    return str(uuid4())


@pytest.fixture
def project(state, user_id):
    return state.create_project(user_id, "legacy-shop", "https://git.example.com/shop.git", "nextjs")


@pytest.fixture
def workspaces():
    """WorkspaceManager stand-in that records calls."""
    ws = MagicMock()
    ws.provision.side_effect = lambda pid, source_url=None, sandbox_id=None: WorkspaceHandle(
        project_id=str(pid), backend="local", root=f"/tmp/ws/{pid}"
    )
    ws.list_files.return_value = ["package.json"]
    ws.write_files.side_effect = lambda handle, files: [f.path for f in files]
    ws.execute.return_value = "all tests passed"
    ws.preview_link.return_value = "http://localhost:3000"
    ws.teardown.return_value = True
    return ws


@pytest.fixture
def codegen():
    gen = MagicMock()
    gen.generate_files.return_value = GeneratedCode(files=[], test_command=None)
    return gen


def _build_pipeline(state, job_queue, event_log, workspaces, codegen,
                    code_analysis=None, behavioral=None, max_attempts=5):
    scheduler = SliceScheduler(state, job_queue, event_log, workspaces)
    processor = ProjectProcessor(
        state, scheduler, event_log, codegen,
        code_analysis=code_analysis, behavioral=behavioral,
        workspaces=workspaces, workflow_poll_interval=0,
    )
    executor = SliceBuildExecutor(
        state, scheduler, event_log, workspaces, codegen, max_attempts=max_attempts
    )
    service = PipelineService(state, job_queue, event_log, scheduler, processor, executor, workspaces)
    job_queue.on_dead_letter = service.handle_dead_letter
    return service


@pytest.fixture
def service(state, job_queue, event_log, workspaces, codegen):
    return _build_pipeline(state, job_queue, event_log, workspaces, codegen)


@pytest.fixture
def pipeline_factory(state, job_queue, event_log, workspaces, codegen):
    """Build a PipelineService with custom collaborators."""
    def factory(**kwargs):
        return _build_pipeline(state, job_queue, event_log, workspaces, codegen, **kwargs)
    return factory


def _plan(*specs):
    return [
        {
            "name": name,
            "description": f"{name} slice",
            "priority": i + 1,
            "dependencies": deps,
            "code_contract": {"test_command": f"npm test -- {name}"},
            "behavioral_contract": {"flows": [f"{name} flow"]},
        }
        for i, (name, deps) in enumerate(specs)
    ]


@pytest.fixture
def make_plan():
    """Planner output: make_plan(("auth", []), ("cart", ["auth"]))."""
    return _plan
