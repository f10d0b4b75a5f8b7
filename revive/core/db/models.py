"""
SQLAlchemy ORM Models for Revive

Pipeline state models:
- User: Owner of projects (identity only, sessions are issued elsewhere)
- Project: Migration project with status, pipeline step and checkpoint
- VerticalSlice: One independently buildable feature of the migration plan
- AgentEvent: Append-only progress/observability log
- PipelineJob: Durable job queue rows (lease, retry, dead-letter)
"""

from sqlalchemy import (
    Column, String, Integer, Float, Text, TIMESTAMP, ForeignKey, BigInteger,
    Index, TypeDecorator, JSON,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import UUID as PostgreSQL_UUID, JSONB
import uuid
from datetime import datetime

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER primary keys
EventIdType = BigInteger().with_variant(Integer(), "sqlite")


# UUID type that works with both PostgreSQL and SQLite
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgreSQL_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        if dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


def _iso(value):
    return value.isoformat() if value else None


# =============================================================================
# User
# =============================================================================

class User(Base):
    """Project owner."""
    __tablename__ = "users"

    user_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    projects = relationship("Project", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(user_id={self.user_id}, username='{self.username}')>"


# =============================================================================
# Pipeline Models
# =============================================================================

class Project(Base):
    """Migration project driven through the pipeline state machine.

    ``checkpoint`` holds completed-phase outputs so a resume can skip work:
    {completed_steps, left_brain_result, right_brain_result, sandbox_id,
    slices_generated, last_updated}.
    """
    __tablename__ = "projects"
    __table_args__ = (
        Index('idx_user_projects', 'user_id', 'created_at'),
        Index('idx_projects_status', 'status'),
    )

    project_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    source_url = Column(String(2048), nullable=True)           # git URL of the legacy codebase
    target_framework = Column(String(100), nullable=True)      # e.g. nextjs, fastapi
    status = Column(String(20), default='pending', nullable=False)
    pipeline_step = Column(String(100), nullable=True)          # left_brain|right_brain|planning|slice:<id>
    checkpoint = Column(JSONType, nullable=True)
    left_analysis_status = Column(String(20), default='pending', nullable=False)
    right_analysis_status = Column(String(20), default='pending', nullable=False)
    confidence_score = Column(Float, default=0.0, nullable=False)
    error_context = Column(JSONType, nullable=True)
    meta = Column("metadata", JSONType, default=dict)
    current_slice_id = Column(UUID(), nullable=True)
    build_job_id = Column(String(100), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="projects")
    slices = relationship("VerticalSlice", back_populates="project", cascade="all, delete-orphan")
    events = relationship("AgentEvent", back_populates="project", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "project_id": str(self.project_id),
            "user_id": str(self.user_id),
            "name": self.name,
            "source_url": self.source_url,
            "target_framework": self.target_framework,
            "status": self.status,
            "pipeline_step": self.pipeline_step,
            "checkpoint": self.checkpoint,
            "left_analysis_status": self.left_analysis_status,
            "right_analysis_status": self.right_analysis_status,
            "confidence_score": self.confidence_score,
            "error_context": self.error_context,
            "metadata": self.meta or {},
            "current_slice_id": str(self.current_slice_id) if self.current_slice_id else None,
            "build_job_id": self.build_job_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Project(project_id={self.project_id}, name='{self.name}', status='{self.status}')>"


class VerticalSlice(Base):
    """One feature unit of the migration plan, built in priority order."""
    __tablename__ = "vertical_slices"
    __table_args__ = (
        Index('idx_slices_project_priority', 'project_id', 'priority'),
    )

    slice_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    priority = Column(Integer, default=0, nullable=False)
    dependencies = Column(JSONType, default=list)               # slice_id strings
    status = Column(String(20), default='pending', nullable=False)  # pending|building|complete|failed
    confidence_score = Column(Float, default=0.0, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    code_contract = Column(JSONType, nullable=True)
    behavioral_contract = Column(JSONType, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="slices")

    def to_dict(self) -> dict:
        return {
            "slice_id": str(self.slice_id),
            "project_id": str(self.project_id),
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies or []),
            "status": self.status,
            "confidence_score": self.confidence_score,
            "retry_count": self.retry_count,
            "code_contract": self.code_contract,
            "behavioral_contract": self.behavioral_contract,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<VerticalSlice(slice_id={self.slice_id}, name='{self.name}', status='{self.status}')>"


class AgentEvent(Base):
    """Append-only agent event. Ordered by (created_at, event_id) per project."""
    __tablename__ = "agent_events"
    __table_args__ = (
        Index('idx_events_project_created', 'project_id', 'created_at', 'event_id'),
    )

    event_id = Column(EventIdType, primary_key=True, autoincrement=True)
    project_id = Column(UUID(), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False)
    slice_id = Column(UUID(), ForeignKey("vertical_slices.slice_id", ondelete="SET NULL"), nullable=True)
    event_type = Column(String(30), nullable=False)
    content = Column(Text, nullable=False, default="")
    meta = Column("metadata", JSONType, default=dict)
    confidence_delta = Column(Float, nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "project_id": str(self.project_id),
            "slice_id": str(self.slice_id) if self.slice_id else None,
            "event_type": self.event_type,
            "content": self.content,
            "metadata": self.meta or {},
            "confidence_delta": self.confidence_delta,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<AgentEvent(event_id={self.event_id}, type='{self.event_type}', project={self.project_id})>"


class PipelineJob(Base):
    """Durable job queue row.

    Workers claim rows via FOR UPDATE SKIP LOCKED with worker_id lease
    ownership and heartbeat_at renewal. Failed attempts are rescheduled
    through next_attempt_at; exhausted rows become 'dead'.
    """
    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        Index('idx_pipeline_jobs_status_created', 'status', 'created_at'),
        Index('idx_pipeline_jobs_project_status', 'project_id', 'status'),
        Index('idx_pipeline_jobs_dedupe', 'dedupe_key', 'status'),
    )

    job_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    job_type = Column(String(30), nullable=False)               # process_project|build_slice
    # No FK: the queue may live in a separate database (QUEUE_DATABASE_URL)
    project_id = Column(UUID(), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), default='pending', nullable=False)  # pending|running|completed|failed|dead
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    next_attempt_at = Column(TIMESTAMP, nullable=True)
    worker_id = Column(String(100), nullable=True)
    heartbeat_at = Column(TIMESTAMP, nullable=True)
    last_error = Column(Text, nullable=True)
    dedupe_key = Column(String(255), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    def __repr__(self):
        return f"<PipelineJob(job_id={self.job_id}, type='{self.job_type}', status='{self.status}')>"
