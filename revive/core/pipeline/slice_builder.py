"""Slice Build Executor: generate, test and self-heal one vertical slice."""

import logging
from typing import Any, Dict, Optional

from ..clients import CodeGenerator, Diagnosis
from ..constants import (
    DEFAULT_DEV_COMMAND,
    DEFAULT_DEV_PORT,
    DEFAULT_TEST_COMMAND,
    DEV_SERVER_PROCESS,
    PROJECT_BUILDING,
    PROJECT_PAUSED,
    SLICE_BUILDING,
    SLICE_COMPLETE,
    SLICE_FAILED,
    SLICE_PENDING,
    slice_step,
)
from ..errors import (
    CollaboratorError,
    CommandError,
    CommandTimeoutError,
    InfrastructureUnavailableError,
    InvalidTransitionError,
    PhaseFailedError,
    UnsafePathError,
)
from ..queue import BuildSliceJob
from ..workspace import WorkspaceHandle, WorkspaceManager
from .scheduler import SliceScheduler
from .state import ErrorContext, PipelineStateMachine

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 4000
_HEAL_PENALTY = -0.02


def success_delta(heals: int) -> float:
    """Confidence gain for a passing slice: 0.3 first try, floor 0.1."""
    return max(0.1, 0.3 / (1 + heals))


def _tail(output: str, limit: int = _OUTPUT_TAIL_CHARS) -> str:
    output = output or ""
    return output if len(output) <= limit else output[-limit:]


class SliceBuildExecutor:
    """Runs a BuildSliceJob to completion or terminal failure."""

    def __init__(
        self,
        state: PipelineStateMachine,
        scheduler: SliceScheduler,
        event_log,
        workspaces: WorkspaceManager,
        codegen: CodeGenerator,
        max_attempts: int = 5,
        command_timeout: Optional[float] = None,
    ):
        self._state = state
        self._scheduler = scheduler
        self._events = event_log
        self._workspaces = workspaces
        self._codegen = codegen
        self.max_attempts = max_attempts
        self.command_timeout = command_timeout

    def run(self, job: BuildSliceJob):
        pid, sid = job.project_id, job.slice_id
        project = self._state.get_project(pid)
        if project["status"] != PROJECT_BUILDING:
            logger.info(f"Project {pid} is '{project['status']}', skipping slice {sid}")
            return

        slice_data = self._state.get_slice(pid, sid)
        if slice_data["status"] == SLICE_COMPLETE:
            logger.info(f"Slice {sid} already complete")
            self._scheduler.schedule_next(pid, job.user_id)
            return

        statuses = {s["slice_id"]: s["status"] for s in self._state.list_slices(pid)}
        unmet = [d for d in slice_data["dependencies"] if statuses.get(d) != SLICE_COMPLETE]
        if unmet:
            logger.info(f"Slice {sid} has incomplete dependencies {unmet}, rescheduling")
            self._scheduler.schedule_next(pid, job.user_id)
            return

        try:
            snapshot = self._state.transition_slice(pid, sid, [SLICE_PENDING, SLICE_BUILDING], SLICE_BUILDING)
        except InvalidTransitionError as e:
            logger.info(f"Slice {sid} not buildable: {e}")
            return
        self._state.advance_step(pid, slice_step(sid))
        self._thought(pid, sid, f"Building slice '{slice_data['name']}'", pipeline_event="slice_start")

        try:
            self._build(project, job.user_id, slice_data)
        except InfrastructureUnavailableError as e:
            # The queue retries the job; the slice must be startable again
            logger.warning(f"Slice {sid}: infrastructure unavailable, job will be retried: {e}")
            self._state.revert_slice(sid, SLICE_BUILDING, snapshot)
            raise
        except (CollaboratorError, UnsafePathError) as e:
            self._fail_slice(pid, slice_data, 0, str(e), retryable=True)
            raise PhaseFailedError(slice_step(sid), str(e))

    # ── Phases ──────────────────────────────────────────────────────────

    def _build(self, project: Dict[str, Any], user_id, slice_data: Dict[str, Any]):
        pid = project["project_id"]
        handle = self._workspaces.provision(
            pid,
            (project["metadata"] or {}).get("boilerplate_url") or project.get("source_url"),
            sandbox_id=(project.get("checkpoint") or {}).get("sandbox_id"),
        )
        if handle.sandbox_id:
            self._state.save_checkpoint(pid, sandbox_id=handle.sandbox_id)
        generated_cmd = self._generate(project, slice_data, handle)

        test_command = (
            (slice_data.get("code_contract") or {}).get("test_command")
            or generated_cmd
            or DEFAULT_TEST_COMMAND
        )
        self._self_heal_loop(pid, user_id, slice_data, handle, test_command)

    def _generate(self, project: Dict[str, Any], slice_data: Dict[str, Any],
                  handle: WorkspaceHandle) -> Optional[str]:
        pid, sid = project["project_id"], slice_data["slice_id"]
        tree = self._workspaces.list_files(handle)
        generated = self._codegen.generate_files(slice_data, tree, project.get("target_framework"))
        written = self._workspaces.write_files(handle, generated.files)
        for path, f in zip(written, generated.files):
            self._events.append(
                pid, "code_write", f"Wrote {path}", slice_id=sid,
                metadata={"path": path, "bytes": len(f.content)},
            )
        logger.info(f"Slice {sid}: wrote {len(written)} files")
        return generated.test_command

    def _self_heal_loop(self, pid, user_id, slice_data: Dict[str, Any],
                        handle: WorkspaceHandle, test_command: str):
        sid = slice_data["slice_id"]
        diagnosis: Optional[Diagnosis] = None

        for attempt in range(1, self.max_attempts + 1):
            self._events.append(pid, "test_run", f"Running tests: {test_command}", slice_id=sid,
                                metadata={"command": test_command, "attempt": attempt})
            passed, exit_code, output = self._run_tests(handle, test_command)
            self._events.append(
                pid, "test_result",
                "Tests passed" if passed else f"Tests failed (exit {exit_code})",
                slice_id=sid,
                metadata={"passed": passed, "exit_code": exit_code, "attempt": attempt,
                          "output": _tail(output)},
            )

            if passed:
                heals = attempt - 1
                self._state.transition_slice(pid, sid, [SLICE_BUILDING], SLICE_COMPLETE, retry_count=heals)
                self._events.append(
                    pid, "confidence_update",
                    f"Slice '{slice_data['name']}' verified after {heals} self-heal attempts",
                    slice_id=sid, confidence_delta=success_delta(heals),
                    metadata={"heals": heals},
                )
                self._start_app(pid, slice_data, handle)
                self._scheduler.schedule_next(pid, user_id)
                return

            diagnosis = self._diagnose(slice_data, output, attempt)
            self._events.append(
                pid, "self_heal", diagnosis.summary, slice_id=sid,
                metadata={"attempt": attempt, "edits": [e.path for e in diagnosis.edits]},
                confidence_delta=_HEAL_PENALTY,
            )

            if attempt >= self.max_attempts:
                break
            if self._state.get_project(pid)["status"] == PROJECT_PAUSED:
                # Leave the slice building; resume resets it
                logger.info(f"Project {pid} paused during slice {sid}")
                return
            if diagnosis.edits:
                try:
                    self._workspaces.write_files(handle, diagnosis.edits)
                except UnsafePathError as e:
                    logger.warning(f"Slice {sid}: could not apply fix: {e}")

        message = diagnosis.summary if diagnosis else "Tests failed"
        self._fail_slice(pid, slice_data, self.max_attempts, message, retryable=True)
        raise PhaseFailedError(slice_step(sid), message)

    def _run_tests(self, handle: WorkspaceHandle, command: str):
        try:
            output = self._workspaces.execute(handle, command, timeout=self.command_timeout)
            return True, 0, output
        except CommandTimeoutError as e:
            return False, None, f"{e}\n{e.output}"
        except CommandError as e:
            return False, e.exit_code, e.output

    def _start_app(self, pid, slice_data: Dict[str, Any], handle: WorkspaceHandle) -> Optional[str]:
        """Start the dev server and publish its preview URL.

        Best-effort: the slice is already verified by its tests, so a server
        that will not start is logged and reported as a thought.
        """
        sid = slice_data["slice_id"]
        contract = slice_data.get("code_contract") or {}
        command = contract.get("dev_command") or DEFAULT_DEV_COMMAND
        try:
            port = int(contract.get("dev_port") or DEFAULT_DEV_PORT)
            self._workspaces.start_background(handle, DEV_SERVER_PROCESS, command)
            url = self._workspaces.preview_link(handle, port)
        except (InfrastructureUnavailableError, CommandError, OSError, ValueError) as e:
            logger.warning(f"Slice {sid}: app did not start: {e}")
            self._thought(pid, sid, f"Could not start the application for preview: {e}",
                          pipeline_event="app_start_failed")
            return None

        self._events.append(
            pid, "app_start", f"Application is live at {url}", slice_id=sid,
            metadata={"url": url, "port": port, "command": command},
        )
        return url

    def _diagnose(self, slice_data: Dict[str, Any], output: str, attempt: int) -> Diagnosis:
        try:
            return self._codegen.diagnose(slice_data, output, attempt)
        except (InfrastructureUnavailableError, CollaboratorError) as e:
            logger.warning(f"Diagnosis unavailable for slice {slice_data['slice_id']}: {e}")
            return Diagnosis(summary=f"Diagnosis unavailable: {e}")

    def _fail_slice(self, pid, slice_data: Dict[str, Any], retries: int, message: str, retryable: bool):
        sid = slice_data["slice_id"]
        try:
            self._state.transition_slice(pid, sid, [SLICE_BUILDING], SLICE_FAILED, retry_count=retries)
        except InvalidTransitionError as e:
            logger.warning(f"Slice {sid} could not be marked failed: {e}")
        self._state.fail(
            pid,
            ErrorContext(
                step=slice_step(sid),
                message=message,
                retryable=retryable,
                details={"slice_id": sid, "slice_name": slice_data["name"], "retry_count": retries},
            ),
            current_slice_id=sid,
        )

    def _thought(self, pid, sid, content: str, **metadata):
        self._events.append(pid, "thought", content, slice_id=sid, metadata=metadata)
