"""Pipeline state machine.

Owns the persisted per-project status, pipeline step, checkpoint and error
context, plus the vertical-slice rows. Every status change is a
compare-and-set against the database (conditional UPDATE ... WHERE
status = :seen), so the read-status/write-status race cannot let two
triggers both schedule work for one project.

``transition`` returns a snapshot of everything it may have overwritten;
callers that fail afterwards (e.g. the queue is down) hand it to
``revert`` to put the project back exactly as it was.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..constants import (
    ANALYSIS_PENDING,
    PROJECT_COMPLETE,
    PROJECT_FAILED,
    PROJECT_PENDING,
    SLICE_BUILDING,
    SLICE_FAILED,
    SLICE_PENDING,
)
from ..db import DatabaseManager, Project, User, VerticalSlice
from ..errors import InvalidTransitionError, ProjectNotFoundError, SliceNotFoundError
from ..utils import as_uuid, utcnow_iso

logger = logging.getLogger(__name__)

# Public field name -> Project attribute
_PROJECT_FIELDS = {
    "status": "status",
    "pipeline_step": "pipeline_step",
    "checkpoint": "checkpoint",
    "error_context": "error_context",
    "metadata": "meta",
    "current_slice_id": "current_slice_id",
    "build_job_id": "build_job_id",
    "left_analysis_status": "left_analysis_status",
    "right_analysis_status": "right_analysis_status",
}

_SLICE_FIELDS = ("status", "retry_count", "confidence_score")


@dataclass
class ErrorContext:
    """Last fatal error of a project, shown to the user until retry/resume."""

    step: Optional[str]
    message: str
    retryable: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "message": self.message,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
            "details": self.details,
        }


def empty_checkpoint() -> Dict[str, Any]:
    return {"completed_steps": []}


def can_resume(project: Dict[str, Any]) -> bool:
    """True iff the checkpoint holds completed work and the project is not complete."""
    checkpoint = project.get("checkpoint") or {}
    return bool(checkpoint.get("completed_steps")) and project.get("status") != PROJECT_COMPLETE


class PipelineStateMachine:
    """Persisted project/slice state with atomic status gating."""

    def __init__(self, db_manager: DatabaseManager, event_log=None):
        self._db = db_manager
        self._events = event_log
        # Left and right analyses checkpoint concurrently from one job
        self._checkpoint_lock = threading.Lock()

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _project_uuid(project_id):
        try:
            return as_uuid(project_id)
        except (ValueError, TypeError):
            raise ProjectNotFoundError(project_id)

    def _load(self, session, project_id, user_id=None) -> Project:
        project = session.get(Project, self._project_uuid(project_id))
        if project is None:
            raise ProjectNotFoundError(project_id)
        if user_id is not None:
            try:
                owner = as_uuid(user_id)
            except (ValueError, TypeError):
                raise ProjectNotFoundError(project_id)
            if project.user_id != owner:
                # Same answer as a missing project
                raise ProjectNotFoundError(project_id)
        return project

    @staticmethod
    def _column_values(fields: Dict[str, Any]) -> Dict[Any, Any]:
        values = {}
        for name, value in fields.items():
            attr = _PROJECT_FIELDS.get(name)
            if attr is None:
                raise ValueError(f"Unknown project field: {name}")
            if name == "current_slice_id" and value is not None:
                value = as_uuid(value)
            values[getattr(Project, attr)] = value
        return values

    @staticmethod
    def _snapshot(project: Project) -> Dict[str, Any]:
        return {
            name: copy.deepcopy(getattr(project, attr))
            for name, attr in _PROJECT_FIELDS.items()
        }

    def _emit(self, project_id, content: str, **metadata):
        if self._events is None:
            return
        try:
            self._events.append(project_id, "thought", content, metadata=metadata)
        except Exception as e:
            logger.warning(f"Failed to record pipeline event for {project_id}: {e}")

    # ── Projects ────────────────────────────────────────────────────────

    def ensure_user(self, user_id, username: Optional[str] = None) -> str:
        uid = as_uuid(user_id)
        with self._db.get_session() as session:
            if session.get(User, uid) is None:
                session.add(User(user_id=uid, username=username or f"user-{str(uid)[:8]}"))
        return str(uid)

    def create_project(self, user_id, name: str, source_url: Optional[str] = None,
                       target_framework: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.ensure_user(user_id)
        with self._db.get_session() as session:
            project = Project(
                user_id=as_uuid(user_id),
                name=name,
                source_url=source_url,
                target_framework=target_framework,
                status=PROJECT_PENDING,
                meta=metadata or {},
                checkpoint=None,
            )
            session.add(project)
            session.flush()
            data = project.to_dict()
        logger.info(f"Created project {data['project_id']} ({name})")
        return data

    def get_project(self, project_id, user_id=None) -> Dict[str, Any]:
        """Ownership-checked read.

        Raises:
            ProjectNotFoundError: Missing, malformed id, or owned by someone else.
        """
        with self._db.get_session() as session:
            return self._load(session, project_id, user_id).to_dict()

    def transition(self, project_id, from_statuses: Iterable[str], to_status: str,
                   user_id=None, **fields) -> Dict[str, Any]:
        """Atomically move a project from one of ``from_statuses`` to ``to_status``.

        Extra keyword fields (pipeline_step, metadata, error_context, ...)
        are written in the same statement. Returns the pre-transition
        snapshot for ``revert``.

        Raises:
            ProjectNotFoundError: Project missing or not owned by user_id.
            InvalidTransitionError: Current status not allowed, or it changed
                between the read and the conditional update.
        """
        allowed = tuple(from_statuses)
        with self._db.get_session() as session:
            project = self._load(session, project_id, user_id)
            current = project.status
            if current not in allowed:
                raise InvalidTransitionError(
                    f"Project is '{current}', expected one of: {', '.join(allowed)}",
                    current_status=current,
                )
            snapshot = self._snapshot(project)
            values = self._column_values(fields)
            values[Project.status] = to_status
            values[Project.updated_at] = datetime.utcnow()

            updated = (
                session.query(Project)
                .filter(Project.project_id == project.project_id, Project.status == current)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                raise InvalidTransitionError(
                    "Project status changed concurrently, retry", current_status=current
                )

        logger.info(f"Project {project_id}: {current} -> {to_status}")
        return snapshot

    def revert(self, project_id, expected_status: str, snapshot: Dict[str, Any]) -> bool:
        """Restore a transition snapshot if the project still has ``expected_status``."""
        fields = dict(snapshot)
        previous = fields.pop("status")
        values = self._column_values(fields)
        values[Project.status] = previous
        values[Project.updated_at] = datetime.utcnow()

        with self._db.get_session() as session:
            updated = (
                session.query(Project)
                .filter(
                    Project.project_id == self._project_uuid(project_id),
                    Project.status == expected_status,
                )
                .update(values, synchronize_session=False)
            )
        if updated:
            logger.info(f"Project {project_id}: reverted {expected_status} -> {previous}")
        else:
            logger.warning(f"Project {project_id}: revert skipped, status is no longer {expected_status}")
        return bool(updated)

    def update_fields(self, project_id, **fields):
        """Write non-status fields unconditionally."""
        values = self._column_values(fields)
        values[Project.updated_at] = datetime.utcnow()
        with self._db.get_session() as session:
            session.query(Project).filter(
                Project.project_id == self._project_uuid(project_id)
            ).update(values, synchronize_session=False)

    def merge_metadata(self, project_id, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._db.get_session() as session:
            project = self._load(session, project_id)
            meta = dict(project.meta or {})
            meta.update(updates)
            project.meta = meta
            return meta

    def advance_step(self, project_id, next_step: Optional[str]) -> bool:
        """Persist pipeline_step; a repeated value is a no-op."""
        with self._db.get_session() as session:
            project = self._load(session, project_id)
            if project.pipeline_step == next_step:
                return False
            project.pipeline_step = next_step
            project.updated_at = datetime.utcnow()
        logger.info(f"Project {project_id}: step -> {next_step}")
        return True

    def set_analysis_status(self, project_id, side: str, status: str):
        if side not in ("left", "right"):
            raise ValueError(f"Unknown analyzer side: {side}")
        self.update_fields(project_id, **{f"{side}_analysis_status": status})

    # ── Checkpoint ──────────────────────────────────────────────────────

    def load_checkpoint(self, project_id) -> Dict[str, Any]:
        with self._db.get_session() as session:
            project = self._load(session, project_id)
            checkpoint = copy.deepcopy(project.checkpoint) or empty_checkpoint()
        checkpoint.setdefault("completed_steps", [])
        return checkpoint

    def save_checkpoint(self, project_id, step: Optional[str] = None, **outputs) -> Dict[str, Any]:
        """Merge phase outputs into the checkpoint, marking ``step`` completed."""
        with self._checkpoint_lock, self._db.get_session() as session:
            project = session.get(Project, self._project_uuid(project_id), with_for_update=True)
            if project is None:
                raise ProjectNotFoundError(project_id)
            checkpoint = copy.deepcopy(project.checkpoint) or empty_checkpoint()
            completed = list(checkpoint.get("completed_steps") or [])
            if step and step not in completed:
                completed.append(step)
            checkpoint["completed_steps"] = completed
            checkpoint.update(outputs)
            checkpoint["last_updated"] = utcnow_iso()
            project.checkpoint = checkpoint

        if step:
            logger.info(f"Project {project_id}: checkpoint saved after {step}")
            self._emit(
                project_id,
                f"Checkpoint saved: {step} complete",
                pipeline_event="checkpoint",
                step=step,
                completed_steps=completed,
            )
        return checkpoint

    def clear_checkpoint(self, project_id):
        """Wipe resume state for a full restart."""
        self.update_fields(
            project_id,
            checkpoint=None,
            pipeline_step=None,
            error_context=None,
            current_slice_id=None,
            build_job_id=None,
            left_analysis_status=ANALYSIS_PENDING,
            right_analysis_status=ANALYSIS_PENDING,
        )
        logger.info(f"Project {project_id}: checkpoint cleared")

    def clear_error_context(self, project_id):
        self.update_fields(project_id, error_context=None)

    def fail(self, project_id, error: ErrorContext, **fields):
        """Terminal failure: status failed with a populated error_context."""
        self.update_fields(project_id, status=PROJECT_FAILED, error_context=error.to_dict(), **fields)
        logger.error(f"Project {project_id} failed at {error.step}: {error.message}")
        self._emit(
            project_id,
            f"Pipeline failed at {error.step or 'unknown step'}: {error.message}",
            pipeline_event="error",
            step=error.step,
            retryable=error.retryable,
        )

    # ── Slices ──────────────────────────────────────────────────────────

    def _slice_uuid(self, slice_id):
        try:
            return as_uuid(slice_id)
        except (ValueError, TypeError):
            raise SliceNotFoundError(slice_id)

    def list_slices(self, project_id, user_id=None) -> List[Dict[str, Any]]:
        with self._db.get_session() as session:
            project = self._load(session, project_id, user_id)
            rows = (
                session.query(VerticalSlice)
                .filter(VerticalSlice.project_id == project.project_id)
                .order_by(VerticalSlice.priority.asc(), VerticalSlice.created_at.asc())
                .all()
            )
            return [row.to_dict() for row in rows]

    def get_slice(self, project_id, slice_id) -> Dict[str, Any]:
        with self._db.get_session() as session:
            row = session.get(VerticalSlice, self._slice_uuid(slice_id))
            if row is None or row.project_id != self._project_uuid(project_id):
                raise SliceNotFoundError(slice_id)
            return row.to_dict()

    def replace_slices(self, project_id, planned: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Store a freshly planned slice set.

        Dependency names are mapped to slice ids; unknown names are dropped.
        An existing set is only replaced while no slice has started building.

        Raises:
            InvalidTransitionError: Existing slices have already been built.
        """
        with self._db.get_session() as session:
            project = self._load(session, project_id)
            existing = (
                session.query(VerticalSlice)
                .filter(VerticalSlice.project_id == project.project_id)
                .all()
            )
            if any(s.status != SLICE_PENDING for s in existing):
                raise InvalidTransitionError("Slices already built; restart the project to re-plan")
            for row in existing:
                session.delete(row)
            session.flush()

            rows = []
            name_to_row = {}
            for index, item in enumerate(planned):
                row = VerticalSlice(
                    project_id=project.project_id,
                    name=str(item["name"])[:255],
                    description=item.get("description"),
                    priority=int(item.get("priority") or index + 1),
                    dependencies=[],
                    status=SLICE_PENDING,
                    code_contract=item.get("code_contract") or {},
                    behavioral_contract=item.get("behavioral_contract") or {},
                )
                session.add(row)
                rows.append((row, item.get("dependencies") or []))
                name_to_row[row.name] = row
            session.flush()

            for row, dep_names in rows:
                dep_ids = []
                for name in dep_names:
                    dep = name_to_row.get(name)
                    if dep is None or dep is row:
                        logger.warning(f"Slice '{row.name}': dropping unknown dependency '{name}'")
                        continue
                    dep_ids.append(str(dep.slice_id))
                row.dependencies = dep_ids

            session.flush()
            result = [row.to_dict() for row, _ in rows]

        logger.info(f"Project {project_id}: stored {len(result)} slices")
        return sorted(result, key=lambda s: s["priority"])

    def delete_slices(self, project_id) -> int:
        with self._db.get_session() as session:
            return (
                session.query(VerticalSlice)
                .filter(VerticalSlice.project_id == self._project_uuid(project_id))
                .delete(synchronize_session=False)
            )

    def transition_slice(self, project_id, slice_id, from_statuses: Iterable[str],
                         to_status: str, **fields) -> Dict[str, Any]:
        """Compare-and-set a slice status. Returns the previous values."""
        allowed = tuple(from_statuses)
        for name in fields:
            if name not in _SLICE_FIELDS:
                raise ValueError(f"Unknown slice field: {name}")

        with self._db.get_session() as session:
            row = session.get(VerticalSlice, self._slice_uuid(slice_id))
            if row is None or row.project_id != self._project_uuid(project_id):
                raise SliceNotFoundError(slice_id)
            current = row.status
            if current not in allowed:
                raise InvalidTransitionError(
                    f"Slice is '{current}', expected one of: {', '.join(allowed)}",
                    current_status=current,
                )
            snapshot = {name: getattr(row, name) for name in _SLICE_FIELDS}
            values = {getattr(VerticalSlice, k): v for k, v in fields.items()}
            values[VerticalSlice.status] = to_status
            values[VerticalSlice.updated_at] = datetime.utcnow()
            updated = (
                session.query(VerticalSlice)
                .filter(VerticalSlice.slice_id == row.slice_id, VerticalSlice.status == current)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                raise InvalidTransitionError("Slice status changed concurrently, retry", current)

        logger.info(f"Slice {slice_id}: {current} -> {to_status}")
        return snapshot

    def revert_slice(self, slice_id, expected_status: str, snapshot: Dict[str, Any]) -> bool:
        values = {getattr(VerticalSlice, k): v for k, v in snapshot.items()}
        with self._db.get_session() as session:
            updated = (
                session.query(VerticalSlice)
                .filter(
                    VerticalSlice.slice_id == self._slice_uuid(slice_id),
                    VerticalSlice.status == expected_status,
                )
                .update(values, synchronize_session=False)
            )
        return bool(updated)

    def reset_unfinished_slices(self, project_id) -> List[Tuple[str, Dict[str, Any]]]:
        """Return interrupted (building) and failed slices to pending for a resume.

        Interrupted builds are recorded as failed first so the slice only
        ever moves building -> failed -> pending. Returns (slice_id, snapshot)
        pairs for ``revert_slice``. All-or-nothing: if any slice changed
        underneath, the ones already reset are reverted and the error raised.
        """
        reset = []
        for slice_data in self.list_slices(project_id):
            sid = slice_data["slice_id"]
            if slice_data["status"] not in (SLICE_BUILDING, SLICE_FAILED):
                continue
            try:
                snapshot = self._reset_slice(project_id, sid, slice_data["status"])
            except (InvalidTransitionError, SliceNotFoundError):
                for done_sid, done_snapshot in reset:
                    self.revert_slice(done_sid, SLICE_PENDING, done_snapshot)
                raise
            reset.append((sid, snapshot))
        return reset

    def _reset_slice(self, project_id, slice_id, status: str) -> Dict[str, Any]:
        if status == SLICE_FAILED:
            return self.transition_slice(project_id, slice_id, [SLICE_FAILED], SLICE_PENDING, retry_count=0)
        snapshot = self.transition_slice(project_id, slice_id, [SLICE_BUILDING], SLICE_FAILED)
        try:
            self.transition_slice(project_id, slice_id, [SLICE_FAILED], SLICE_PENDING, retry_count=0)
        except InvalidTransitionError:
            self.revert_slice(slice_id, SLICE_FAILED, snapshot)
            raise
        return snapshot
