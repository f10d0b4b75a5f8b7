"""Pydantic schemas for API request/response models."""

from .pipeline import AgentEventCreate, ConfigureRequest, ProjectCreate, RetryResponse

__all__ = [
    'AgentEventCreate',
    'ConfigureRequest',
    'ProjectCreate',
    'RetryResponse',
]
