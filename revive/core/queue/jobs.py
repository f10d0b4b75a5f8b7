"""Job payload variants.

Each job family is its own dataclass tagged by ``kind``; ``job_from_row``
is the single place a stored (job_type, payload) pair is decoded.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from ..constants import JOB_BUILD_SLICE, JOB_PROCESS_PROJECT


@dataclass(frozen=True)
class ProcessProjectJob:
    """Run the analysis and planning phases for a project."""

    project_id: str
    user_id: Optional[str] = None

    kind = JOB_PROCESS_PROJECT

    @property
    def dedupe_key(self) -> Optional[str]:
        return None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BuildSliceJob:
    """Run one Slice Build Executor pass."""

    project_id: str
    slice_id: str
    user_id: Optional[str] = None

    kind = JOB_BUILD_SLICE

    @property
    def dedupe_key(self) -> str:
        return f"slice-build-{self.slice_id}"

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


Job = Union[ProcessProjectJob, BuildSliceJob]

_JOB_TYPES = {
    JOB_PROCESS_PROJECT: ProcessProjectJob,
    JOB_BUILD_SLICE: BuildSliceJob,
}


def job_from_row(job_type: str, payload: Dict[str, Any]) -> Job:
    """Decode a stored job.

    Raises:
        ValueError: Unknown job type or payload missing required fields.
    """
    cls = _JOB_TYPES.get(job_type)
    if cls is None:
        raise ValueError(f"Unknown job type: {job_type}")
    if not payload or not payload.get("project_id"):
        raise ValueError(f"{job_type} payload must include project_id")
    try:
        return cls(**payload)
    except TypeError as e:
        raise ValueError(f"Invalid {job_type} payload: {e}")


@dataclass
class ClaimedJob:
    """A job leased to a worker."""

    job_id: str
    attempts: int
    max_attempts: int
    job: Job
