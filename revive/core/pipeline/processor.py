"""Whole-project phase: dual analysis, then slice planning.

Left brain (static code analysis) and right brain (behavioral analysis)
run in parallel; each side's result is checkpointed the moment it lands
so a retried or resumed job only re-runs what is missing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from ..clients import BehavioralAnalysisClient, CodeAnalysisClient, CodeGenerator
from ..constants import (
    ANALYSIS_COMPLETE,
    ANALYSIS_FAILED,
    ANALYSIS_RUNNING,
    ANALYSIS_SKIPPED,
    PROJECT_ANALYZED,
    PROJECT_BUILDING,
    PROJECT_PAUSED,
    PROJECT_PROCESSING,
    PROJECT_READY,
    STEP_LEFT_BRAIN,
    STEP_PLANNING,
    STEP_RIGHT_BRAIN,
)
from ..errors import (
    CollaboratorError,
    InfrastructureUnavailableError,
    InvalidTransitionError,
    PhaseFailedError,
)
from ..queue import ProcessProjectJob
from .scheduler import SliceScheduler
from .state import ErrorContext, PipelineStateMachine

logger = logging.getLogger(__name__)

_WORKFLOW_POLL_ATTEMPTS = 60
_WORKFLOW_POLL_INTERVAL = 5.0


class ProjectProcessor:
    """Runs a ProcessProjectJob."""

    def __init__(
        self,
        state: PipelineStateMachine,
        scheduler: SliceScheduler,
        event_log,
        codegen: CodeGenerator,
        code_analysis: Optional[CodeAnalysisClient] = None,
        behavioral: Optional[BehavioralAnalysisClient] = None,
        workspaces=None,
        workflow_poll_interval: float = _WORKFLOW_POLL_INTERVAL,
    ):
        self._state = state
        self._scheduler = scheduler
        self._events = event_log
        self._codegen = codegen
        self._code_analysis = code_analysis
        self._behavioral = behavioral
        self._workspaces = workspaces
        self.workflow_poll_interval = workflow_poll_interval

    # ── Entry point ─────────────────────────────────────────────────────

    def run(self, job: ProcessProjectJob):
        """Execute analysis and planning for one project.

        Raises:
            InfrastructureUnavailableError: A collaborator is down; the
                queue retries the job and the checkpoint skips finished work.
            PhaseFailedError: Terminal failure, already recorded on the project.
        """
        pid = job.project_id
        project = self._state.get_project(pid)
        if project["status"] == PROJECT_READY and self._build_was_interrupted(project):
            self._start_build(pid, job.user_id)
            return
        if project["status"] != PROJECT_PROCESSING:
            logger.info(f"Project {pid} is '{project['status']}', skipping process job")
            return

        self._state.clear_error_context(pid)
        checkpoint = self._state.load_checkpoint(pid)
        completed = set(checkpoint["completed_steps"])
        analyses_were_done = STEP_LEFT_BRAIN in completed and STEP_RIGHT_BRAIN in completed

        if completed:
            self._thought(pid, f"Resuming from checkpoint: {', '.join(sorted(completed))} already done",
                          pipeline_event="resume")

        if not analyses_were_done:
            self._run_analyses(project, completed)

        if self._paused(pid):
            return

        checkpoint = self._state.load_checkpoint(pid)
        project = self._state.get_project(pid)
        if STEP_PLANNING not in checkpoint["completed_steps"] and not analyses_were_done:
            # Fresh analysis stops at 'analyzed' until the user configures
            self._finish_analysis(pid, checkpoint)
            return

        if STEP_PLANNING not in checkpoint["completed_steps"]:
            self._plan(project, checkpoint)

        if self._paused(pid):
            return

        project = self._state.get_project(pid)
        if project["status"] == PROJECT_PROCESSING:
            # Planning was checkpointed by an earlier attempt
            self._state.transition(pid, [PROJECT_PROCESSING], PROJECT_READY, pipeline_step=None)

        if (project["metadata"] or {}).get("auto_build", True):
            self._start_build(pid, job.user_id)

    # ── Analysis ────────────────────────────────────────────────────────

    def _run_analyses(self, project: Dict[str, Any], completed: set):
        pid = project["project_id"]
        tasks = {}
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="analysis") as pool:
            if STEP_LEFT_BRAIN not in completed:
                tasks[STEP_LEFT_BRAIN] = pool.submit(self._left_brain, project)
            if STEP_RIGHT_BRAIN not in completed:
                tasks[STEP_RIGHT_BRAIN] = pool.submit(self._right_brain, project)

        infra_error = None
        for step, future in tasks.items():
            error = future.exception()
            if error is None:
                continue
            side = "left" if step == STEP_LEFT_BRAIN else "right"
            self._state.set_analysis_status(pid, side, ANALYSIS_FAILED)
            if isinstance(error, InfrastructureUnavailableError):
                logger.warning(f"Project {pid}: {step} unavailable, job will be retried: {error}")
                infra_error = infra_error or error
                continue
            message = error.message if isinstance(error, PhaseFailedError) else str(error)
            self._state.fail(pid, ErrorContext(step=step, message=message, retryable=True,
                                               details=getattr(error, "details", {})))
            raise PhaseFailedError(step, message)

        if infra_error is not None:
            raise infra_error

    def _left_brain(self, project: Dict[str, Any]):
        pid = project["project_id"]
        if self._code_analysis is None:
            self._state.set_analysis_status(pid, "left", ANALYSIS_SKIPPED)
            self._state.save_checkpoint(pid, STEP_LEFT_BRAIN, left_brain_result={"skipped": True})
            self._thought(pid, "Code analysis service not configured, skipping left brain")
            return

        self._state.advance_step(pid, STEP_LEFT_BRAIN)
        self._state.set_analysis_status(pid, "left", ANALYSIS_RUNNING)

        if self._workspaces is not None:
            handle = self._workspaces.provision(
                pid, project.get("source_url"),
                sandbox_id=(project.get("checkpoint") or {}).get("sandbox_id"),
            )
            if handle.sandbox_id:
                # Recorded before analysis so a retried job reconnects
                self._state.save_checkpoint(pid, sandbox_id=handle.sandbox_id)

        self._events.append(pid, "tool_call", "Fetching code analysis overview",
                            metadata={"tool": "code_analysis", "operation": "stats_overview"})
        stats = self._code_analysis.get_stats_overview()
        features = self._code_analysis.derive_feature_map()
        functions = self._code_analysis.list_functions(limit=100)
        self._events.append(
            pid, "observation",
            f"Found {features['totalFeatures']} features across {features['totalEntities']} entities",
            metadata={"tool": "code_analysis", "features": features["totalFeatures"]},
            confidence_delta=0.05,
        )

        result = {"stats": stats, "features": features["features"], "functions": functions}
        self._state.save_checkpoint(pid, STEP_LEFT_BRAIN, left_brain_result=result)
        self._state.set_analysis_status(pid, "left", ANALYSIS_COMPLETE)

    def _right_brain(self, project: Dict[str, Any]):
        pid = project["project_id"]
        if self._behavioral is None:
            self._state.set_analysis_status(pid, "right", ANALYSIS_SKIPPED)
            self._state.save_checkpoint(pid, STEP_RIGHT_BRAIN, right_brain_result={"skipped": True})
            self._thought(pid, "Behavioral analysis service not configured, skipping right brain")
            return

        self._state.advance_step(pid, STEP_RIGHT_BRAIN)
        self._state.set_analysis_status(pid, "right", ANALYSIS_RUNNING)
        meta = project.get("metadata") or {}

        self._events.append(pid, "tool_call", "Starting behavioral ingestion",
                            metadata={"tool": "behavioral_analysis", "operation": "ingest"})
        started = self._behavioral.start_ingestion(
            knowledge_id=pid,
            website_url=meta.get("website_url"),
            documentation_urls=meta.get("documentation_urls"),
        )
        job_id = started.get("job_id") or started.get("jobId")
        if not job_id:
            raise PhaseFailedError(STEP_RIGHT_BRAIN, "Behavioral ingestion returned no job id")

        status = self._behavioral.wait_for_workflow(
            job_id,
            max_attempts=_WORKFLOW_POLL_ATTEMPTS,
            interval=self.workflow_poll_interval,
        )
        if status.get("status") == "failed":
            raise PhaseFailedError(
                STEP_RIGHT_BRAIN,
                f"Behavioral analysis workflow failed: {status.get('error') or 'unknown error'}",
                details={"job_id": job_id},
            )

        knowledge = self._behavioral.query_knowledge(pid)
        self._events.append(pid, "observation", "Behavioral analysis complete",
                            metadata={"tool": "behavioral_analysis", "job_id": job_id},
                            confidence_delta=0.05)
        self._state.save_checkpoint(pid, STEP_RIGHT_BRAIN,
                                    right_brain_result={"job_id": job_id, "knowledge": knowledge})
        self._state.set_analysis_status(pid, "right", ANALYSIS_COMPLETE)

    def _finish_analysis(self, pid, checkpoint: Dict[str, Any]):
        left = checkpoint.get("left_brain_result") or {}
        summary = {
            "feature_count": len(left.get("features") or []),
            "left_skipped": bool(left.get("skipped")),
            "right_skipped": bool((checkpoint.get("right_brain_result") or {}).get("skipped")),
        }
        meta = self._state.get_project(pid)["metadata"] or {}
        meta["analysis_summary"] = summary
        self._state.transition(pid, [PROJECT_PROCESSING], PROJECT_ANALYZED,
                               pipeline_step=None, metadata=meta)
        self._thought(pid, "Analysis complete. Review the results and configure the migration to continue.",
                      pipeline_event="analysis_complete")

    # ── Planning ────────────────────────────────────────────────────────

    def _plan(self, project: Dict[str, Any], checkpoint: Dict[str, Any]):
        pid = project["project_id"]
        self._state.advance_step(pid, STEP_PLANNING)
        self._thought(pid, "Planning vertical slices")

        try:
            planned = self._codegen.plan_slices(project, {
                "left": checkpoint.get("left_brain_result"),
                "right": checkpoint.get("right_brain_result"),
            })
        except CollaboratorError as e:
            self._state.fail(pid, ErrorContext(step=STEP_PLANNING, message=str(e)))
            raise PhaseFailedError(STEP_PLANNING, str(e))

        if not planned:
            message = "Planner produced no slices"
            self._state.fail(pid, ErrorContext(step=STEP_PLANNING, message=message))
            raise PhaseFailedError(STEP_PLANNING, message)

        if self._behavioral is not None:
            for item in planned:
                if item.get("behavioral_contract"):
                    continue
                try:
                    item["behavioral_contract"] = self._behavioral.generate_contract(
                        pid, item["name"], item.get("description")
                    )
                except CollaboratorError as e:
                    logger.warning(f"No behavioral contract for slice '{item['name']}': {e}")

        try:
            slices = self._state.replace_slices(pid, planned)
        except InvalidTransitionError as e:
            self._state.fail(pid, ErrorContext(step=STEP_PLANNING, message=str(e), retryable=False))
            raise PhaseFailedError(STEP_PLANNING, str(e))

        self._state.save_checkpoint(pid, STEP_PLANNING, slices_generated=len(slices))
        self._state.transition(pid, [PROJECT_PROCESSING], PROJECT_READY, pipeline_step=None)
        self._thought(pid, f"Planned {len(slices)} vertical slices",
                      pipeline_event="plan_complete", slices=[s["name"] for s in slices])

    def _start_build(self, pid, user_id):
        try:
            snapshot = self._scheduler.begin_build(pid, user_id)
        except InvalidTransitionError as e:
            logger.info(f"Project {pid}: not starting build: {e}")
            return
        try:
            self._scheduler.schedule_next(pid, user_id)
        except InfrastructureUnavailableError as e:
            # Back to ready; the retried job picks the build up again
            logger.warning(f"Project {pid}: could not schedule first slice, job will be retried: {e}")
            self._state.revert(pid, PROJECT_BUILDING, snapshot)
            raise

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _build_was_interrupted(project: Dict[str, Any]) -> bool:
        """Planned with auto-build on, but the first slice never got queued."""
        completed = (project.get("checkpoint") or {}).get("completed_steps") or []
        return STEP_PLANNING in completed and (project["metadata"] or {}).get("auto_build", True)

    def _paused(self, pid) -> bool:
        if self._state.get_project(pid)["status"] == PROJECT_PAUSED:
            logger.info(f"Project {pid} paused, stopping")
            return True
        return False

    def _thought(self, pid, content: str, **metadata):
        self._events.append(pid, "thought", content, metadata=metadata)
