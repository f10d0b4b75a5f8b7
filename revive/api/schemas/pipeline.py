"""Pipeline request/response schemas."""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

EventType = Literal[
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
]


class ProjectCreate(BaseModel):
    """Create project request."""
    name: str = Field(..., description="Project name", min_length=1)
    source_url: Optional[str] = Field(None, description="Git URL of the legacy codebase")
    target_framework: Optional[str] = Field(None, description="Framework to migrate to")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra project settings")


class ConfigureRequest(BaseModel):
    """Migration options chosen after analysis."""
    boilerplate_url: Optional[str] = Field(None, description="Starter repository for the new codebase")
    tech_preferences: Dict[str, Any] = Field(default_factory=dict)
    auto_build: bool = Field(True, description="Start building slices as soon as planning finishes")


class AgentEventCreate(BaseModel):
    """Event reported by an external agent."""
    event_type: EventType
    content: str = ""
    slice_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    confidence_delta: Optional[float] = Field(None, ge=-1.0, le=1.0)


class RetryResponse(BaseModel):
    action: Literal["resumed", "restarted"]
    project: Dict[str, Any]
