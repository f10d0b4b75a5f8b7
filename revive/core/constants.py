"""Shared constants for the Revive pipeline.

Status vocabularies, pipeline step names and defaults used across
the state machine, queue, workers and API layer.
"""

# =============================================================================
# Project Status
# =============================================================================

PROJECT_PENDING = "pending"
PROJECT_PROCESSING = "processing"
PROJECT_ANALYZED = "analyzed"
PROJECT_READY = "ready"
PROJECT_BUILDING = "building"
PROJECT_PAUSED = "paused"
PROJECT_COMPLETE = "complete"
PROJECT_FAILED = "failed"

PROJECT_STATUSES = (
    PROJECT_PENDING,
    PROJECT_PROCESSING,
    PROJECT_ANALYZED,
    PROJECT_READY,
    PROJECT_BUILDING,
    PROJECT_PAUSED,
    PROJECT_COMPLETE,
    PROJECT_FAILED,
)

# Statuses during which a job may be queued or running for the project
ACTIVE_STATUSES = (PROJECT_PROCESSING, PROJECT_BUILDING)

# =============================================================================
# Analyzer sub-status
# =============================================================================

ANALYSIS_PENDING = "pending"
ANALYSIS_RUNNING = "running"
ANALYSIS_COMPLETE = "complete"
ANALYSIS_FAILED = "failed"
ANALYSIS_SKIPPED = "skipped"

# =============================================================================
# Slice Status
# =============================================================================

SLICE_PENDING = "pending"
SLICE_BUILDING = "building"
SLICE_COMPLETE = "complete"
SLICE_FAILED = "failed"

# =============================================================================
# Pipeline steps
# =============================================================================

STEP_LEFT_BRAIN = "left_brain"
STEP_RIGHT_BRAIN = "right_brain"
STEP_PLANNING = "planning"
SLICE_STEP_PREFIX = "slice:"


def slice_step(slice_id) -> str:
    """Pipeline step name for building one slice."""
    return f"{SLICE_STEP_PREFIX}{slice_id}"


# =============================================================================
# Agent event types
# =============================================================================

EVENT_TYPES = (
    "thought",
    "tool_call",
    "observation",
    "code_write",
    "test_run",
    "test_result",
    "self_heal",
    "confidence_update",
    "browser_action",
    "screenshot",
    "app_start",
)

# =============================================================================
# Job queue
# =============================================================================

JOB_PROCESS_PROJECT = "process_project"
JOB_BUILD_SLICE = "build_slice"

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_DEAD = "dead"
JOB_CANCELLED = "cancelled"

JOB_ACTIVE_STATUSES = (JOB_PENDING, JOB_RUNNING)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_TEST_COMMAND = "npm test --silent"
DEFAULT_DEV_COMMAND = "npm run dev"
DEFAULT_DEV_PORT = 3000
DEV_SERVER_PROCESS = "dev-server"
WORKSPACE_MARKER = ".revive-workspace"
EVENT_PAGE_SIZE = 100
