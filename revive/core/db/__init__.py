"""
Database module for Revive.

Exports:
- DatabaseManager: Database connection and session management
- get_database_manager: Factory function for DatabaseManager
- wait_for_db: Database availability checker with retry logic
- Models: User, Project, VerticalSlice, AgentEvent, PipelineJob
- Base: SQLAlchemy declarative base
"""

from .db import DatabaseManager, get_database_manager, wait_for_db
from .models import (
    Base,
    User,
    Project,
    VerticalSlice,
    AgentEvent,
    PipelineJob,
)

__all__ = [
    # Database management
    "DatabaseManager",
    "get_database_manager",
    "wait_for_db",

    # ORM models
    "Base",
    "User",
    "Project",
    "VerticalSlice",
    "AgentEvent",
    "PipelineJob",
]
