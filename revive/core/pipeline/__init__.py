"""Pipeline orchestration: state machine, phases and triggers."""

from .processor import ProjectProcessor
from .scheduler import SliceScheduler
from .service import RETRY_MODES, PipelineService, build_service
from .slice_builder import SliceBuildExecutor, success_delta
from .state import ErrorContext, PipelineStateMachine, can_resume

__all__ = [
    "ErrorContext",
    "PipelineService",
    "PipelineStateMachine",
    "ProjectProcessor",
    "RETRY_MODES",
    "SliceBuildExecutor",
    "SliceScheduler",
    "build_service",
    "can_resume",
    "success_delta",
]
