"""Environment-driven settings for Revive.

Every value is optional at boot. A missing database, queue, analyzer or
LLM setting disables the feature that needs it instead of failing startup.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using {default}")
        return default


@dataclass
class PipelineSettings:
    """Resolved process configuration."""

    database_url: Optional[str] = None
    queue_database_url: Optional[str] = None

    workspace_backend: str = "local"
    workspace_root: str = "./workspaces"
    sandbox_api_url: Optional[str] = None
    sandbox_api_key: Optional[str] = None

    code_analysis_url: Optional[str] = None
    behavioral_analysis_url: Optional[str] = None

    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None

    max_self_heal_attempts: int = 5
    process_job_max_attempts: int = 3
    slice_job_max_attempts: int = 3
    job_backoff_seconds: float = 1.0
    worker_concurrency: int = 2
    worker_poll_interval: float = 2.0
    worker_drain_timeout: float = 60.0
    command_timeout_seconds: float = 600.0
    collaborator_timeout_seconds: float = 60.0
    event_poll_interval: float = 1.0

    session_secret: str = "revive-dev-secret-change-me"

    @property
    def sandbox_configured(self) -> bool:
        return bool(self.sandbox_api_url and self.sandbox_api_key)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        database_url = os.getenv("DATABASE_URL") or None
        backend = os.getenv("WORKSPACE_BACKEND", "local").lower()
        if backend not in ("local", "sandbox"):
            logger.warning(f"Unknown WORKSPACE_BACKEND={backend!r}, using local")
            backend = "local"

        return cls(
            database_url=database_url,
            queue_database_url=os.getenv("QUEUE_DATABASE_URL") or database_url,
            workspace_backend=backend,
            workspace_root=os.getenv("WORKSPACE_ROOT", "./workspaces"),
            sandbox_api_url=os.getenv("SANDBOX_API_URL") or None,
            sandbox_api_key=os.getenv("SANDBOX_API_KEY") or None,
            code_analysis_url=os.getenv("CODE_ANALYSIS_URL") or None,
            behavioral_analysis_url=os.getenv("BEHAVIORAL_ANALYSIS_URL") or None,
            llm_provider=os.getenv("LLM_PROVIDER") or None,
            llm_model=os.getenv("LLM_MODEL") or None,
            max_self_heal_attempts=_env_int("MAX_SELF_HEAL_ATTEMPTS", 5),
            process_job_max_attempts=_env_int("PROCESS_JOB_MAX_ATTEMPTS", 3),
            slice_job_max_attempts=_env_int("SLICE_JOB_MAX_ATTEMPTS", 3),
            job_backoff_seconds=_env_float("JOB_BACKOFF_SECONDS", 1.0),
            worker_concurrency=_env_int("WORKER_CONCURRENCY", 2),
            worker_poll_interval=_env_float("WORKER_POLL_INTERVAL", 2.0),
            worker_drain_timeout=_env_float("WORKER_DRAIN_TIMEOUT", 60.0),
            command_timeout_seconds=_env_float("COMMAND_TIMEOUT_SECONDS", 600.0),
            collaborator_timeout_seconds=_env_float("COLLABORATOR_TIMEOUT_SECONDS", 60.0),
            event_poll_interval=_env_float("EVENT_POLL_INTERVAL", 1.0),
            session_secret=os.getenv("SESSION_SECRET", "revive-dev-secret-change-me"),
        )


_settings: Optional[PipelineSettings] = None


def get_settings() -> PipelineSettings:
    """Return process settings, reading the environment on first call."""
    global _settings
    if _settings is None:
        _settings = PipelineSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next get_settings() re-reads the env."""
    global _settings
    _settings = None
