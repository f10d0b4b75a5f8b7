"""User-facing pipeline triggers.

Each trigger follows the same shape: compare-and-set the project status,
enqueue (or schedule) work, and on ``QueueUnavailableError`` revert the
status write before re-raising so the project never sticks in an active
state with nothing queued.
"""

import logging
from typing import Any, Dict, List, Optional

from ...config import PipelineSettings
from ..clients import BehavioralAnalysisClient, CodeAnalysisClient, CodeGenerator, build_llm
from ..constants import (
    ACTIVE_STATUSES,
    PROJECT_ANALYZED,
    PROJECT_BUILDING,
    PROJECT_COMPLETE,
    PROJECT_FAILED,
    PROJECT_PAUSED,
    PROJECT_PENDING,
    PROJECT_PROCESSING,
    PROJECT_READY,
    SLICE_BUILDING,
    SLICE_FAILED,
    SLICE_PENDING,
    STEP_PLANNING,
    EVENT_PAGE_SIZE,
)
from ..db import DatabaseManager
from ..errors import InfrastructureUnavailableError, InvalidTransitionError, SliceNotFoundError
from ..events import EventBroadcaster, EventLog
from ..queue import BuildSliceJob, Job, JobQueue, ProcessProjectJob
from ..workspace import WorkspaceManager, build_workspace_manager
from .processor import ProjectProcessor
from .scheduler import SliceScheduler
from .slice_builder import SliceBuildExecutor
from .state import ErrorContext, PipelineStateMachine, can_resume

logger = logging.getLogger(__name__)

RETRY_MODES = ("auto", "resume", "restart")


class PipelineService:
    """Entry points for the API and the queue worker."""

    def __init__(
        self,
        state: PipelineStateMachine,
        job_queue: JobQueue,
        event_log: EventLog,
        scheduler: SliceScheduler,
        processor: ProjectProcessor,
        slice_executor: SliceBuildExecutor,
        workspaces: Optional[WorkspaceManager] = None,
    ):
        self.state = state
        self.queue = job_queue
        self.events = event_log
        self.scheduler = scheduler
        self.processor = processor
        self.slice_executor = slice_executor
        self.workspaces = workspaces

    # ── Reads ───────────────────────────────────────────────────────────

    def create_project(self, user_id, name: str, source_url: Optional[str] = None,
                       target_framework: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValueError("Project name is required")
        return self.state.create_project(user_id, name.strip(), source_url, target_framework, metadata)

    def get_project(self, project_id, user_id) -> Dict[str, Any]:
        return self.state.get_project(project_id, user_id)

    def list_slices(self, project_id, user_id) -> List[Dict[str, Any]]:
        return self.state.list_slices(project_id, user_id)

    def list_events(self, project_id, user_id, after=None, limit: int = EVENT_PAGE_SIZE):
        self.state.get_project(project_id, user_id)
        return self.events.list_events(project_id, after=after, limit=limit)

    def append_event(self, project_id, user_id, event_type: str, content: str = "",
                     slice_id=None, metadata=None, confidence_delta=None) -> Dict[str, Any]:
        self.state.get_project(project_id, user_id)
        if slice_id:
            self.state.get_slice(project_id, slice_id)
        return self.events.append(project_id, event_type, content, slice_id=slice_id,
                                  metadata=metadata, confidence_delta=confidence_delta)

    # ── Triggers ────────────────────────────────────────────────────────

    def start_processing(self, project_id, user_id) -> Dict[str, Any]:
        """pending (or failed without checkpoint) -> processing, enqueue analysis.

        Raises:
            InvalidTransitionError: Wrong status, or failed with a checkpoint
                (use resume/restart instead).
            QueueUnavailableError: Nothing was enqueued; status reverted.
        """
        project = self.state.get_project(project_id, user_id)
        if project["status"] == PROJECT_FAILED and can_resume(project):
            raise InvalidTransitionError(
                "Project has a checkpoint; use retry with mode resume or restart",
                current_status=PROJECT_FAILED,
            )
        snapshot = self.state.transition(
            project_id, [PROJECT_PENDING, PROJECT_FAILED], PROJECT_PROCESSING,
            user_id=user_id, error_context=None,
        )
        self._enqueue_or_revert(project_id, ProcessProjectJob(str(project_id), str(user_id)),
                                PROJECT_PROCESSING, snapshot)
        return self.state.get_project(project_id)

    def configure(self, project_id, user_id, boilerplate_url: Optional[str] = None,
                  tech_preferences: Optional[Dict[str, Any]] = None,
                  auto_build: bool = True) -> Dict[str, Any]:
        """analyzed -> processing at the planning step with the user's options."""
        project = self.state.get_project(project_id, user_id)
        meta = dict(project["metadata"] or {})
        meta.update({
            "configured": True,
            "boilerplate_url": boilerplate_url,
            "tech_preferences": tech_preferences or {},
            "auto_build": auto_build,
        })
        snapshot = self.state.transition(
            project_id, [PROJECT_ANALYZED], PROJECT_PROCESSING,
            user_id=user_id, pipeline_step=STEP_PLANNING, metadata=meta,
        )
        self._enqueue_or_revert(project_id, ProcessProjectJob(str(project_id), str(user_id)),
                                PROJECT_PROCESSING, snapshot)
        return self.state.get_project(project_id)

    def start_build(self, project_id, user_id) -> Dict[str, Any]:
        self.state.get_project(project_id, user_id)
        snapshot = self.scheduler.begin_build(project_id, user_id)
        try:
            self.scheduler.schedule_next(project_id, user_id)
        except InfrastructureUnavailableError:
            self.state.revert(project_id, PROJECT_BUILDING, snapshot)
            raise
        return self.state.get_project(project_id)

    def retry_slice(self, project_id, slice_id, user_id) -> Dict[str, Any]:
        """Reset one failed slice to pending and resume the build loop."""
        self.state.get_project(project_id, user_id)
        slice_data = self.state.get_slice(project_id, slice_id)
        if slice_data["status"] != SLICE_FAILED:
            raise InvalidTransitionError(
                f"Slice is '{slice_data['status']}', only failed slices can be retried",
                current_status=slice_data["status"],
            )
        snapshot = self.state.transition(
            project_id, [PROJECT_FAILED, PROJECT_PAUSED], PROJECT_BUILDING,
            user_id=user_id, error_context=None,
        )
        try:
            slice_snapshot = self.state.transition_slice(
                project_id, slice_id, [SLICE_FAILED], SLICE_PENDING, retry_count=0
            )
        except (InvalidTransitionError, SliceNotFoundError):
            # Slice changed after the check above
            self.state.revert(project_id, PROJECT_BUILDING, snapshot)
            raise
        try:
            self.scheduler.schedule_next(project_id, user_id)
        except InfrastructureUnavailableError:
            self.state.revert_slice(slice_id, SLICE_PENDING, slice_snapshot)
            self.state.revert(project_id, PROJECT_BUILDING, snapshot)
            raise
        self.events.append(project_id, "thought", f"Retrying slice '{slice_data['name']}'",
                           slice_id=slice_id, metadata={"pipeline_event": "slice_retry"})
        return self.state.get_project(project_id)

    def resume_or_restart(self, project_id, user_id, mode: str = "auto") -> str:
        """Resume from checkpoint or start over. Returns 'resumed' or 'restarted'."""
        if mode not in RETRY_MODES:
            raise ValueError(f"mode must be one of: {', '.join(RETRY_MODES)}")
        project = self.state.get_project(project_id, user_id)

        if project["status"] in ACTIVE_STATUSES and self.queue.active_job(project_id):
            raise InvalidTransitionError(
                f"Project is '{project['status']}' with an active job", current_status=project["status"]
            )

        if mode == "restart" or (mode == "auto" and not can_resume(project)):
            self._restart(project, user_id)
            return "restarted"
        if not can_resume(project):
            raise InvalidTransitionError("Nothing to resume; use mode restart",
                                         current_status=project["status"])
        self._resume(project, user_id)
        return "resumed"

    def _restart(self, project: Dict[str, Any], user_id):
        pid = project["project_id"]
        retryable_from = (PROJECT_PENDING, PROJECT_ANALYZED, PROJECT_READY, PROJECT_BUILDING,
                          PROJECT_PROCESSING, PROJECT_PAUSED, PROJECT_FAILED, PROJECT_COMPLETE)
        self.queue.cancel_for_project(pid)
        snapshot = self.state.transition(
            pid, retryable_from, PROJECT_PROCESSING, user_id=user_id,
            checkpoint=None, pipeline_step=None, error_context=None,
            current_slice_id=None, build_job_id=None,
            left_analysis_status="pending", right_analysis_status="pending",
        )
        self._enqueue_or_revert(pid, ProcessProjectJob(pid, str(user_id)), PROJECT_PROCESSING, snapshot)
        deleted = self.state.delete_slices(pid)
        if self.workspaces is not None:
            self.workspaces.teardown(pid, destroy=True)
        self.events.append(pid, "thought", "Restarting pipeline from scratch",
                           metadata={"pipeline_event": "restart", "slices_deleted": deleted})

    def _resume(self, project: Dict[str, Any], user_id):
        pid = project["project_id"]
        checkpoint = project["checkpoint"] or {}
        slices = self.state.list_slices(pid)
        from_statuses = (PROJECT_FAILED, PROJECT_PAUSED, PROJECT_PROCESSING, PROJECT_BUILDING,
                         PROJECT_ANALYZED, PROJECT_READY)

        if STEP_PLANNING in checkpoint.get("completed_steps", []) and slices:
            snapshot = self.state.transition(pid, from_statuses, PROJECT_BUILDING,
                                             user_id=user_id, error_context=None)
            try:
                reset = self.state.reset_unfinished_slices(pid)
            except (InvalidTransitionError, SliceNotFoundError):
                self.state.revert(pid, PROJECT_BUILDING, snapshot)
                raise
            try:
                self.scheduler.schedule_next(pid, user_id)
            except InfrastructureUnavailableError:
                # Put interrupted slices back the way they were (building -> pending was two steps)
                for sid, slice_snapshot in reset:
                    self.state.revert_slice(sid, SLICE_PENDING, slice_snapshot)
                self.state.revert(pid, PROJECT_BUILDING, snapshot)
                raise
        else:
            snapshot = self.state.transition(pid, from_statuses, PROJECT_PROCESSING,
                                             user_id=user_id, error_context=None)
            self._enqueue_or_revert(pid, ProcessProjectJob(pid, str(user_id)), PROJECT_PROCESSING, snapshot)

        self.events.append(pid, "thought",
                           f"Resuming from checkpoint: {', '.join(checkpoint.get('completed_steps', []))}",
                           metadata={"pipeline_event": "resume"})

    def pause(self, project_id, user_id) -> Dict[str, Any]:
        self.state.transition(project_id, [PROJECT_PROCESSING, PROJECT_BUILDING], PROJECT_PAUSED,
                              user_id=user_id)
        cancelled = self.queue.cancel_for_project(project_id) if self.queue.available else 0
        if self.workspaces is not None:
            self.workspaces.teardown(str(project_id), destroy=False)
        self.events.append(project_id, "thought", "Pipeline paused",
                           metadata={"pipeline_event": "pause", "jobs_cancelled": cancelled})
        return self.state.get_project(project_id)

    # ── Worker side ─────────────────────────────────────────────────────

    def dispatch(self, job: Job):
        """Route a claimed job to its phase."""
        if isinstance(job, ProcessProjectJob):
            self.processor.run(job)
        elif isinstance(job, BuildSliceJob):
            self.slice_executor.run(job)
        else:
            raise ValueError(f"Unsupported job: {job!r}")

    def handle_dead_letter(self, info: Dict[str, Any]):
        """Queue gave up on a job: surface it on the project as a retryable failure."""
        pid = info["project_id"]
        try:
            project = self.state.get_project(pid)
        except LookupError:
            logger.warning(f"Dead-lettered job {info.get('job_id')} for unknown project {pid}")
            return

        slice_id = (info.get("payload") or {}).get("slice_id")
        if slice_id:
            try:
                self.state.transition_slice(pid, slice_id, [SLICE_BUILDING, SLICE_PENDING], SLICE_FAILED)
            except (LookupError, InvalidTransitionError) as e:
                logger.info(f"Dead-lettered slice {slice_id} left as is: {e}")

        if project["status"] in ACTIVE_STATUSES:
            self.state.fail(pid, ErrorContext(
                step=project["pipeline_step"],
                message=f"Job failed after {info.get('attempts')} attempts: {info.get('last_error')}",
                retryable=True,
                details={"job_id": info.get("job_id"), "job_type": info.get("job_type")},
            ))

    # ── Helpers ─────────────────────────────────────────────────────────

    def _enqueue_or_revert(self, project_id, job: Job, expected_status: str, snapshot: Dict[str, Any]) -> str:
        try:
            job_id = self.queue.enqueue(job)
        except InfrastructureUnavailableError:
            self.state.revert(project_id, expected_status, snapshot)
            raise
        return job_id


def build_service(settings: PipelineSettings, db_manager: DatabaseManager,
                  queue_db: Optional[DatabaseManager] = None,
                  broadcaster: Optional[EventBroadcaster] = None) -> PipelineService:
    """Wire the pipeline from settings."""
    event_log = EventLog(db_manager, broadcaster=broadcaster)
    state = PipelineStateMachine(db_manager, event_log)
    workspaces = build_workspace_manager(settings)

    code_analysis = (
        CodeAnalysisClient(settings.code_analysis_url, timeout=settings.collaborator_timeout_seconds)
        if settings.code_analysis_url else None
    )
    behavioral = (
        BehavioralAnalysisClient(settings.behavioral_analysis_url, timeout=settings.collaborator_timeout_seconds)
        if settings.behavioral_analysis_url else None
    )
    codegen = CodeGenerator(build_llm(settings.llm_provider, settings.llm_model))

    job_queue = JobQueue(
        queue_db,
        max_attempts={
            "process_project": settings.process_job_max_attempts,
            "build_slice": settings.slice_job_max_attempts,
        },
        base_backoff=settings.job_backoff_seconds,
    )
    scheduler = SliceScheduler(state, job_queue, event_log, workspaces)
    processor = ProjectProcessor(state, scheduler, event_log, codegen, code_analysis, behavioral, workspaces)
    executor = SliceBuildExecutor(
        state, scheduler, event_log, workspaces, codegen,
        max_attempts=settings.max_self_heal_attempts,
        command_timeout=settings.command_timeout_seconds,
    )
    service = PipelineService(state, job_queue, event_log, scheduler, processor, executor, workspaces)
    job_queue.on_dead_letter = service.handle_dead_letter
    return service
