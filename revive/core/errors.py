"""Exception hierarchy for the Revive pipeline.

- Not-found / ownership: ProjectNotFoundError, SliceNotFoundError (404)
- Rejected status gate: InvalidTransitionError (409)
- Infrastructure unavailable: InfrastructureUnavailableError and
  subclasses (503, retryable, state rolled back)
- Terminal phase failure: PhaseFailedError (project marked failed)
- Workspace commands and paths: CommandError, CommandTimeoutError,
  UnsafePathError
"""

from typing import Any, Dict, Optional


class ProjectNotFoundError(LookupError):
    """Project does not exist or is not owned by the caller."""

    def __init__(self, project_id):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class SliceNotFoundError(LookupError):
    """Slice does not exist within the given project."""

    def __init__(self, slice_id):
        super().__init__(f"Slice {slice_id} not found")
        self.slice_id = slice_id


class InvalidTransitionError(ValueError):
    """The project (or slice) is not in a status that allows the request."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class InfrastructureUnavailableError(RuntimeError):
    """A backing service could not be reached. Safe to retry."""

    retryable = True
    component = "infrastructure"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or f"{self.component} unavailable, retry")


class QueueUnavailableError(InfrastructureUnavailableError):
    component = "job queue"


class WorkspaceUnavailableError(InfrastructureUnavailableError):
    component = "workspace"


class CollaboratorUnavailableError(InfrastructureUnavailableError):
    component = "analysis service"


class CollaboratorError(Exception):
    """A collaborator answered but rejected the request (4xx, bad payload)."""


class PhaseFailedError(Exception):
    """Terminal failure of a pipeline phase."""

    def __init__(self, step: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.step = step
        self.message = message
        self.details = details or {}


class CommandError(Exception):
    """A workspace command exited non-zero."""

    def __init__(self, command: str, exit_code: Optional[int], output: str = ""):
        super().__init__(
            f"Command failed (exit {exit_code}): {command}\n{output}".rstrip()
        )
        self.command = command
        self.exit_code = exit_code
        self.output = output


class CommandTimeoutError(CommandError):
    """A workspace command exceeded its timeout."""

    def __init__(self, command: str, timeout: float, output: str = ""):
        super().__init__(command, None, output)
        self.timeout = timeout
        self.args = (f"Command timed out after {timeout}s: {command}",)


class UnsafePathError(ValueError):
    """Workspace path is absolute, escapes the root, or contains a null byte."""
