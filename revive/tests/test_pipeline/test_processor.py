"""Tests for ProjectProcessor: dual analysis, checkpoint resume and planning."""

from unittest.mock import MagicMock

import pytest

from revive.core.constants import (
    PROJECT_ANALYZED,
    PROJECT_BUILDING,
    PROJECT_FAILED,
    PROJECT_PAUSED,
    PROJECT_PENDING,
    PROJECT_PROCESSING,
    PROJECT_READY,
)
from revive.core.errors import CollaboratorUnavailableError, PhaseFailedError, QueueUnavailableError
from revive.core.queue import ProcessProjectJob
from revive.core.workspace import WorkspaceHandle


# ── Fixtures ──────────────────────────────────────────────────────────────


def _code_analysis():
    client = MagicMock()
    client.get_stats_overview.return_value = {"files": 120, "functions": 940}
    client.derive_feature_map.return_value = {
        "features": [{"name": "checkout", "entityCount": 3}, {"name": "auth", "entityCount": 2}],
        "totalFeatures": 2,
        "totalEntities": 5,
    }
    client.list_functions.return_value = [{"name": "placeOrder"}]
    return client


def _behavioral(status="complete"):
    client = MagicMock()
    client.start_ingestion.return_value = {"job_id": "wf-1"}
    client.wait_for_workflow.return_value = {"status": status, "error": "crawler blocked"}
    client.query_knowledge.return_value = {"flows": ["login", "checkout"]}
    client.generate_contract.return_value = {"flows": ["generated"]}
    return client


def _run(service, job_queue):
    claimed = job_queue.claim("test-worker", limit=1)
    assert len(claimed) == 1
    service.dispatch(claimed[0].job)
    job_queue.ack(claimed[0].job_id)


# ── Tests: Analysis ──────────────────────────────────────────────────────


class TestAnalysis:

    def test_start_processing_ends_in_analyzed(self, pipeline_factory, state, project, user_id, job_queue,
                                               workspaces):
        code, behavioral = _code_analysis(), _behavioral()
        service = pipeline_factory(code_analysis=code, behavioral=behavioral)
        pid = project["project_id"]

        service.start_processing(pid, user_id)
        _run(service, job_queue)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_ANALYZED
        assert loaded["left_analysis_status"] == "complete"
        assert loaded["right_analysis_status"] == "complete"
        assert loaded["metadata"]["analysis_summary"]["feature_count"] == 2
        assert set(loaded["checkpoint"]["completed_steps"]) == {"left_brain", "right_brain"}
        assert loaded["checkpoint"]["right_brain_result"]["knowledge"] == {"flows": ["login", "checkout"]}
        behavioral.start_ingestion.assert_called_once_with(
            knowledge_id=pid, website_url=None, documentation_urls=None,
        )
        workspaces.provision.assert_called_once()

    def test_left_brain_reconnects_to_checkpointed_sandbox(self, pipeline_factory, state, project, user_id,
                                                           job_queue, workspaces):
        pid = project["project_id"]
        state.save_checkpoint(pid, sandbox_id="sb-9")
        workspaces.provision.side_effect = lambda p, source_url=None, sandbox_id=None: WorkspaceHandle(
            project_id=str(p), backend="sandbox", root="/home/daytona/workspace", sandbox_id=sandbox_id,
        )
        service = pipeline_factory(code_analysis=_code_analysis())

        service.start_processing(pid, user_id)
        _run(service, job_queue)

        assert workspaces.provision.call_args.kwargs["sandbox_id"] == "sb-9"
        assert state.get_project(pid)["checkpoint"]["sandbox_id"] == "sb-9"

    def test_sandbox_id_saved_before_analysis_runs(self, pipeline_factory, state, project, user_id,
                                                   job_queue, workspaces):
        pid = project["project_id"]
        workspaces.provision.side_effect = lambda p, source_url=None, sandbox_id=None: WorkspaceHandle(
            project_id=str(p), backend="sandbox", root="/home/daytona/workspace", sandbox_id="sb-new",
        )
        code = _code_analysis()
        code.get_stats_overview.side_effect = CollaboratorUnavailableError("analysis down")
        service = pipeline_factory(code_analysis=code)

        service.start_processing(pid, user_id)
        claimed = job_queue.claim("test-worker", limit=1)[0]
        with pytest.raises(CollaboratorUnavailableError):
            service.dispatch(claimed.job)

        assert state.get_project(pid)["checkpoint"]["sandbox_id"] == "sb-new"

    def test_unconfigured_collaborators_are_skipped(self, pipeline_factory, state, project, user_id, job_queue):
        service = pipeline_factory()
        pid = project["project_id"]

        service.start_processing(pid, user_id)
        _run(service, job_queue)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_ANALYZED
        assert loaded["left_analysis_status"] == "skipped"
        assert loaded["right_analysis_status"] == "skipped"

    def test_unavailable_side_is_retried_without_rerunning_the_other(
        self, pipeline_factory, state, project, user_id, job_queue,
    ):
        code, behavioral = _code_analysis(), _behavioral()
        behavioral.start_ingestion.side_effect = [CollaboratorUnavailableError(), {"job_id": "wf-2"}]
        service = pipeline_factory(code_analysis=code, behavioral=behavioral)
        pid = project["project_id"]
        service.start_processing(pid, user_id)

        claimed = job_queue.claim("test-worker", limit=1)[0]
        with pytest.raises(CollaboratorUnavailableError):
            service.dispatch(claimed.job)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_PROCESSING
        assert loaded["checkpoint"]["completed_steps"] == ["left_brain"]
        assert loaded["right_analysis_status"] == "failed"

        service.dispatch(claimed.job)

        assert state.get_project(pid)["status"] == PROJECT_ANALYZED
        assert code.get_stats_overview.call_count == 1
        assert behavioral.start_ingestion.call_count == 2

    def test_failed_workflow_is_terminal(self, pipeline_factory, state, project, user_id, job_queue):
        service = pipeline_factory(code_analysis=_code_analysis(), behavioral=_behavioral(status="failed"))
        pid = project["project_id"]
        service.start_processing(pid, user_id)

        claimed = job_queue.claim("test-worker", limit=1)[0]
        with pytest.raises(PhaseFailedError):
            service.dispatch(claimed.job)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_FAILED
        assert loaded["error_context"]["step"] == "right_brain"
        assert "crawler blocked" in loaded["error_context"]["message"]

    def test_paused_project_is_left_alone(self, pipeline_factory, state, project):
        code = _code_analysis()
        service = pipeline_factory(code_analysis=code)
        pid = project["project_id"]
        state.transition(pid, [PROJECT_PENDING], PROJECT_PAUSED)

        service.processor.run(ProcessProjectJob(project_id=pid))

        code.get_stats_overview.assert_not_called()
        assert state.get_project(pid)["status"] == PROJECT_PAUSED


# ── Tests: Planning ──────────────────────────────────────────────────────


class TestPlanning:

    def _analyzed(self, service, state, project, user_id, job_queue):
        pid = project["project_id"]
        service.start_processing(pid, user_id)
        _run(service, job_queue)
        assert state.get_project(pid)["status"] == PROJECT_ANALYZED
        return pid

    def test_configure_then_plan_stores_slices(self, pipeline_factory, state, project, user_id,
                                               job_queue, codegen, make_plan):
        codegen.plan_slices.return_value = make_plan(("auth", []), ("cart", ["auth"]))
        service = pipeline_factory(code_analysis=_code_analysis())
        pid = self._analyzed(service, state, project, user_id, job_queue)

        service.configure(pid, user_id, tech_preferences={"styling": "tailwind"}, auto_build=False)
        _run(service, job_queue)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_READY
        assert loaded["checkpoint"]["slices_generated"] == 2
        assert "planning" in loaded["checkpoint"]["completed_steps"]
        slices = state.list_slices(pid)
        assert [s["name"] for s in slices] == ["auth", "cart"]
        assert slices[1]["dependencies"] == [slices[0]["slice_id"]]

        planned_for = codegen.plan_slices.call_args[0][0]
        assert planned_for["metadata"]["tech_preferences"] == {"styling": "tailwind"}

    def test_auto_build_schedules_first_slice(self, pipeline_factory, state, project, user_id,
                                              job_queue, codegen, make_plan):
        codegen.plan_slices.return_value = make_plan(("auth", []))
        service = pipeline_factory()
        pid = self._analyzed(service, state, project, user_id, job_queue)

        service.configure(pid, user_id)
        _run(service, job_queue)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_BUILDING
        active = job_queue.active_job(pid)
        assert active["job_type"] == "build_slice"
        assert active["payload"]["slice_id"] == state.list_slices(pid)[0]["slice_id"]

    def test_missing_behavioral_contracts_are_generated(self, pipeline_factory, state, project, user_id,
                                                        job_queue, codegen, make_plan):
        planned = make_plan(("auth", []))
        planned[0]["behavioral_contract"] = {}
        codegen.plan_slices.return_value = planned
        behavioral = _behavioral()
        service = pipeline_factory(behavioral=behavioral)
        pid = self._analyzed(service, state, project, user_id, job_queue)

        service.configure(pid, user_id, auto_build=False)
        _run(service, job_queue)

        assert state.list_slices(pid)[0]["behavioral_contract"] == {"flows": ["generated"]}
        behavioral.generate_contract.assert_called_once_with(pid, "auth", "auth slice")

    def test_queue_outage_when_starting_build_returns_to_ready(self, pipeline_factory, state, project, user_id,
                                                               job_queue, codegen, make_plan, monkeypatch):
        codegen.plan_slices.return_value = make_plan(("auth", []))
        service = pipeline_factory()
        pid = self._analyzed(service, state, project, user_id, job_queue)
        service.configure(pid, user_id)
        claimed = job_queue.claim("test-worker", limit=1)[0]

        def queue_down(job, dedupe_key=None):
            raise QueueUnavailableError("queue database unreachable")

        with monkeypatch.context() as patched:
            patched.setattr(job_queue, "enqueue", queue_down)
            with pytest.raises(QueueUnavailableError):
                service.dispatch(claimed.job)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_READY
        assert loaded["error_context"] is None

        # The queue's retry of the same job starts the build
        service.dispatch(claimed.job)
        job_queue.ack(claimed.job_id)

        assert state.get_project(pid)["status"] == PROJECT_BUILDING
        assert job_queue.active_job(pid)["job_type"] == "build_slice"
        codegen.plan_slices.assert_called_once()

    def test_ready_project_without_auto_build_is_left_alone(self, pipeline_factory, state, project, user_id,
                                                            job_queue, codegen, make_plan):
        codegen.plan_slices.return_value = make_plan(("auth", []))
        service = pipeline_factory()
        pid = self._analyzed(service, state, project, user_id, job_queue)
        service.configure(pid, user_id, auto_build=False)
        claimed = job_queue.claim("test-worker", limit=1)[0]

        service.dispatch(claimed.job)
        service.dispatch(claimed.job)

        assert state.get_project(pid)["status"] == PROJECT_READY

    def test_empty_plan_fails_project(self, pipeline_factory, state, project, user_id, job_queue, codegen):
        codegen.plan_slices.return_value = []
        service = pipeline_factory()
        pid = self._analyzed(service, state, project, user_id, job_queue)
        service.configure(pid, user_id)

        claimed = job_queue.claim("test-worker", limit=1)[0]
        with pytest.raises(PhaseFailedError):
            service.dispatch(claimed.job)

        loaded = state.get_project(pid)
        assert loaded["status"] == PROJECT_FAILED
        assert loaded["error_context"]["step"] == "planning"
