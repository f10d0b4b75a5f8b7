"""Slice scheduling: pick the next buildable slice and enqueue it.

Called when a build starts, after every successful slice, and on
retry/resume. Exactly one slice builds at a time per project.
"""

import logging
from typing import Optional

from ..constants import (
    PROJECT_BUILDING,
    PROJECT_COMPLETE,
    PROJECT_READY,
    SLICE_BUILDING,
    SLICE_COMPLETE,
    SLICE_FAILED,
    SLICE_PENDING,
    slice_step,
)
from ..errors import InvalidTransitionError
from ..queue import BuildSliceJob, JobQueue
from .state import ErrorContext, PipelineStateMachine

logger = logging.getLogger(__name__)


class SliceScheduler:
    """Dependency-aware selection of the next slice build."""

    def __init__(self, state: PipelineStateMachine, job_queue: JobQueue, event_log=None, workspaces=None):
        self._state = state
        self._queue = job_queue
        self._events = event_log
        self._workspaces = workspaces

    def _thought(self, project_id, content: str, **metadata):
        if self._events is not None:
            self._events.append(project_id, "thought", content, metadata=metadata)

    def begin_build(self, project_id, user_id=None) -> dict:
        """ready -> building, then schedule the first eligible slice.

        Returns the transition snapshot so callers can revert.
        """
        snapshot = self._state.transition(project_id, [PROJECT_READY], PROJECT_BUILDING, user_id=user_id)
        self._thought(project_id, "Starting automated build pipeline for all slices.", pipeline_event="build_start")
        return snapshot

    def schedule_next(self, project_id, user_id=None) -> Optional[str]:
        """Enqueue the next eligible slice; returns its id or None.

        - all slices complete: project complete, workspace stopped
        - a slice is building: wait for it
        - a slice failed: project failed with error context
        - otherwise the first pending slice (by priority) whose dependencies
          are all complete

        Raises:
            QueueUnavailableError: The build job could not be enqueued.
        """
        project = self._state.get_project(project_id)
        if project["status"] != PROJECT_BUILDING:
            logger.info(f"Project {project_id} is '{project['status']}', not scheduling slices")
            return None

        slices = self._state.list_slices(project_id)
        if not slices:
            return None

        if all(s["status"] == SLICE_COMPLETE for s in slices):
            try:
                self._state.transition(
                    project_id, [PROJECT_BUILDING], PROJECT_COMPLETE,
                    pipeline_step=None, current_slice_id=None, build_job_id=None,
                )
            except InvalidTransitionError as e:
                logger.info(f"Project {project_id} not completed: {e}")
                return None
            self._thought(project_id, "All slices complete! Project build finished.", pipeline_event="build_complete")
            if self._workspaces is not None:
                self._workspaces.teardown(project_id, destroy=False)
            return None

        if any(s["status"] == SLICE_BUILDING for s in slices):
            return None

        failed = next((s for s in slices if s["status"] == SLICE_FAILED), None)
        if failed is not None:
            self._state.fail(
                project_id,
                ErrorContext(
                    step=slice_step(failed["slice_id"]),
                    message=f"Slice \"{failed['name']}\" failed after {failed['retry_count']} retries",
                    retryable=True,
                    details={"slice_id": failed["slice_id"]},
                ),
                current_slice_id=failed["slice_id"],
            )
            return None

        completed = {s["slice_id"] for s in slices if s["status"] == SLICE_COMPLETE}
        next_slice = next(
            (
                s for s in slices
                if s["status"] == SLICE_PENDING
                and all(dep in completed for dep in s["dependencies"])
            ),
            None,
        )
        if next_slice is None:
            # Pending slices remain but none can ever start
            blocked = [s["name"] for s in slices if s["status"] == SLICE_PENDING]
            self._state.fail(
                project_id,
                ErrorContext(
                    step="planning",
                    message=f"Slices blocked by unsatisfiable dependencies: {', '.join(blocked)}",
                    retryable=False,
                ),
            )
            return None

        sid = next_slice["slice_id"]
        self._state.advance_step(project_id, slice_step(sid))
        self._state.update_fields(project_id, current_slice_id=sid)
        job_id = self._queue.enqueue(
            BuildSliceJob(project_id=str(project_id), slice_id=sid, user_id=user_id or project["user_id"])
        )
        self._state.update_fields(project_id, build_job_id=job_id)
        logger.info(f"Project {project_id}: scheduled slice '{next_slice['name']}' ({sid})")
        return sid
