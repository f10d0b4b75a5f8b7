"""Durable job queue backed by the ``pipeline_jobs`` table.

Delivery is at-least-once:
- enqueue inserts a pending row (optionally deduped on an active key)
- claim leases due rows to a worker (FOR UPDATE SKIP LOCKED on PostgreSQL),
  never handing out a second job for a project that already has one running
- heartbeat renews the lease; stale leases are reclaimed
- fail reschedules with exponential backoff until max_attempts, then
  dead-letters the row and calls ``on_dead_letter``
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select, text
from sqlalchemy.exc import SQLAlchemyError

from ..constants import (
    JOB_ACTIVE_STATUSES,
    JOB_BUILD_SLICE,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_DEAD,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESS_PROJECT,
    JOB_RUNNING,
)
from ..db import DatabaseManager, PipelineJob
from ..errors import QueueUnavailableError
from ..utils import as_uuid
from .jobs import ClaimedJob, Job, job_from_row

logger = logging.getLogger(__name__)

# Serializes claims on PostgreSQL so two workers never both see a project as idle
_CLAIM_LOCK_KEY = 7_302_114

DEFAULT_MAX_ATTEMPTS = {
    JOB_PROCESS_PROJECT: 3,
    JOB_BUILD_SLICE: 3,
}


def _job_dict(row: PipelineJob) -> Dict[str, Any]:
    return {
        "job_id": str(row.job_id),
        "job_type": row.job_type,
        "project_id": str(row.project_id),
        "payload": row.payload,
        "status": row.status,
        "attempts": row.attempts,
        "max_attempts": row.max_attempts,
        "worker_id": row.worker_id,
        "last_error": row.last_error,
        "dedupe_key": row.dedupe_key,
        "next_attempt_at": row.next_attempt_at.isoformat() if row.next_attempt_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class JobQueue:
    """Enqueue/claim/ack/fail over a database table."""

    def __init__(
        self,
        db_manager: Optional[DatabaseManager],
        max_attempts: Optional[Dict[str, int]] = None,
        base_backoff: float = 1.0,
        stale_threshold: float = 120.0,
        on_dead_letter: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self._db = db_manager
        self.max_attempts = dict(DEFAULT_MAX_ATTEMPTS)
        if max_attempts:
            self.max_attempts.update(max_attempts)
        self.base_backoff = base_backoff
        self.stale_threshold = stale_threshold
        self.on_dead_letter = on_dead_letter

    @property
    def available(self) -> bool:
        return self._db is not None

    def _require_db(self) -> DatabaseManager:
        if self._db is None:
            raise QueueUnavailableError("Job queue is not configured, retry later")
        return self._db

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        return self.base_backoff * (2 ** max(attempts - 1, 0))

    # ── Producer side ───────────────────────────────────────────────────

    def enqueue(self, job: Job, dedupe_key: Optional[str] = None) -> str:
        """Persist a job for at-least-once delivery and return its id.

        An active job with the same dedupe key is returned instead of
        inserting a duplicate.

        Raises:
            ValueError: Payload has no project_id.
            QueueUnavailableError: The queue store is unreachable.
        """
        payload = job.to_payload()
        if not payload.get("project_id"):
            raise ValueError("Job payload must include project_id")
        key = dedupe_key or job.dedupe_key
        db = self._require_db()

        try:
            with db.get_session() as session:
                if key:
                    existing = (
                        session.query(PipelineJob)
                        .filter(
                            PipelineJob.dedupe_key == key,
                            PipelineJob.status.in_(JOB_ACTIVE_STATUSES),
                        )
                        .first()
                    )
                    if existing is not None:
                        logger.info(f"Job {key} already queued as {existing.job_id}")
                        return str(existing.job_id)

                row = PipelineJob(
                    job_type=job.kind,
                    project_id=as_uuid(payload["project_id"]),
                    payload=payload,
                    status=JOB_PENDING,
                    attempts=0,
                    max_attempts=self.max_attempts.get(job.kind, 3),
                    dedupe_key=key,
                )
                session.add(row)
                session.flush()
                job_id = str(row.job_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue {job.kind} for project {payload['project_id']}: {e}")
            raise QueueUnavailableError(f"Job queue unavailable, retry: {e.__class__.__name__}")

        logger.info(f"Enqueued {job.kind} job {job_id} for project {payload['project_id']}")
        return job_id

    def cancel_for_project(self, project_id) -> int:
        """Cancel pending jobs for a project. Running jobs finish cooperatively."""
        db = self._require_db()
        with db.get_session() as session:
            count = (
                session.query(PipelineJob)
                .filter(
                    PipelineJob.project_id == as_uuid(project_id),
                    PipelineJob.status == JOB_PENDING,
                )
                .update(
                    {
                        PipelineJob.status: JOB_CANCELLED,
                        PipelineJob.completed_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
        if count:
            logger.info(f"Cancelled {count} pending job(s) for project {project_id}")
        return count

    # ── Consumer side ───────────────────────────────────────────────────

    def claim(self, worker_id: str, limit: int = 1) -> List[ClaimedJob]:
        """Lease up to ``limit`` due jobs, at most one per project.

        Also reclaims running jobs whose heartbeat is older than the stale
        threshold; a reclaimed job that has used all attempts is dead-lettered.
        """
        db = self._require_db()
        now = datetime.utcnow()
        stale_cutoff = now - timedelta(seconds=self.stale_threshold)
        claimed: List[ClaimedJob] = []
        dead: List[Dict[str, Any]] = []

        with db.get_session() as session:
            if db.dialect == "postgresql":
                session.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"), {"key": _CLAIM_LOCK_KEY}
                )

            stale_rows = (
                session.query(PipelineJob)
                .filter(
                    PipelineJob.status == JOB_RUNNING,
                    PipelineJob.heartbeat_at < stale_cutoff,
                )
                .with_for_update(skip_locked=True)
                .all()
            )
            for row in stale_rows:
                row.worker_id = None
                if row.attempts >= row.max_attempts:
                    row.status = JOB_DEAD
                    row.completed_at = now
                    row.last_error = row.last_error or "Worker lease expired"
                    dead.append(_job_dict(row))
                    logger.warning(f"Stale job {row.job_id} dead-lettered after {row.attempts} attempts")
                else:
                    row.status = JOB_PENDING
                    row.next_attempt_at = None
                    logger.warning(f"Reclaimed stale job {row.job_id}")
            session.flush()

            busy_projects = select(PipelineJob.project_id).where(
                PipelineJob.status == JOB_RUNNING
            )
            candidates = (
                session.query(PipelineJob)
                .filter(
                    PipelineJob.status == JOB_PENDING,
                    or_(
                        PipelineJob.next_attempt_at.is_(None),
                        PipelineJob.next_attempt_at <= now,
                    ),
                    PipelineJob.project_id.notin_(busy_projects),
                )
                .order_by(PipelineJob.created_at.asc())
                .limit(max(limit, 1) * 4)
                .with_for_update(skip_locked=True)
                .all()
            )

            seen_projects = set()
            for row in candidates:
                if len(claimed) >= limit:
                    break
                if row.project_id in seen_projects:
                    continue
                try:
                    job = job_from_row(row.job_type, row.payload)
                except ValueError as e:
                    logger.error(f"Discarding malformed job {row.job_id}: {e}")
                    row.status = JOB_FAILED
                    row.last_error = str(e)
                    row.completed_at = now
                    continue

                seen_projects.add(row.project_id)
                row.status = JOB_RUNNING
                row.worker_id = worker_id
                row.started_at = now
                row.heartbeat_at = now
                row.attempts = (row.attempts or 0) + 1
                row.next_attempt_at = None
                claimed.append(ClaimedJob(
                    job_id=str(row.job_id),
                    attempts=row.attempts,
                    max_attempts=row.max_attempts,
                    job=job,
                ))

        for info in dead:
            self._notify_dead_letter(info)
        if claimed:
            logger.info(f"Worker {worker_id} claimed {len(claimed)} job(s)")
        return claimed

    def heartbeat(self, worker_id: str) -> int:
        """Renew the lease on every job this worker is running."""
        db = self._require_db()
        with db.get_session() as session:
            return (
                session.query(PipelineJob)
                .filter(
                    PipelineJob.status == JOB_RUNNING,
                    PipelineJob.worker_id == worker_id,
                )
                .update(
                    {PipelineJob.heartbeat_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            )

    def ack(self, job_id: str):
        db = self._require_db()
        with db.get_session() as session:
            row = session.get(PipelineJob, as_uuid(job_id))
            if row is None:
                return
            row.status = JOB_COMPLETED
            row.completed_at = datetime.utcnow()
            row.worker_id = None
        logger.info(f"Job {job_id} completed")

    def fail(self, job_id: str, error: str, retryable: bool = True) -> Optional[str]:
        """Record a failed attempt; returns the job's new status.

        Retryable failures go back to pending with exponential backoff until
        attempts run out, then the job is dead-lettered.
        """
        db = self._require_db()
        now = datetime.utcnow()
        dead_info = None

        with db.get_session() as session:
            row = session.get(PipelineJob, as_uuid(job_id))
            if row is None:
                return None
            row.last_error = (error or "")[:4000]
            row.worker_id = None

            if not retryable:
                row.status = JOB_FAILED
                row.completed_at = now
                logger.warning(f"Job {job_id} failed terminally: {error}")
            elif row.attempts >= row.max_attempts:
                row.status = JOB_DEAD
                row.completed_at = now
                dead_info = _job_dict(row)
                logger.error(f"Job {job_id} dead-lettered after {row.attempts} attempt(s): {error}")
            else:
                delay = self.backoff_delay(row.attempts)
                row.status = JOB_PENDING
                row.next_attempt_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job {job_id} attempt {row.attempts}/{row.max_attempts} failed, "
                    f"retrying in {delay:.1f}s: {error}"
                )
            status = row.status

        if dead_info is not None:
            self._notify_dead_letter(dead_info)
        return status

    def _notify_dead_letter(self, info: Dict[str, Any]):
        if self.on_dead_letter is None:
            return
        try:
            self.on_dead_letter(info)
        except Exception as e:
            logger.error(f"Dead-letter handler failed for job {info['job_id']}: {e}", exc_info=True)

    # ── Inspection ──────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        db = self._require_db()
        with db.get_session() as session:
            row = session.get(PipelineJob, as_uuid(job_id))
            return _job_dict(row) if row else None

    def active_job(self, project_id) -> Optional[Dict[str, Any]]:
        """The pending or running job for a project, if any."""
        db = self._require_db()
        with db.get_session() as session:
            row = (
                session.query(PipelineJob)
                .filter(
                    PipelineJob.project_id == as_uuid(project_id),
                    PipelineJob.status.in_(JOB_ACTIVE_STATUSES),
                )
                .order_by(PipelineJob.created_at.asc())
                .first()
            )
            return _job_dict(row) if row else None

    def dead_letters(self, limit: int = 50) -> List[Dict[str, Any]]:
        db = self._require_db()
        with db.get_session() as session:
            rows = (
                session.query(PipelineJob)
                .filter(PipelineJob.status == JOB_DEAD)
                .order_by(PipelineJob.completed_at.desc())
                .limit(limit)
                .all()
            )
            return [_job_dict(row) for row in rows]
