"""Durable pipeline job queue and its worker."""

from .jobs import BuildSliceJob, ClaimedJob, Job, ProcessProjectJob, job_from_row
from .queue import DEFAULT_MAX_ATTEMPTS, JobQueue
from .worker import PipelineWorker

__all__ = [
    "BuildSliceJob",
    "ClaimedJob",
    "DEFAULT_MAX_ATTEMPTS",
    "Job",
    "JobQueue",
    "PipelineWorker",
    "ProcessProjectJob",
    "job_from_row",
]
