"""FastAPI dependencies for Revive.

Provides shared dependencies (auth, pipeline service, event stream) via
FastAPI's Depends() injection system, plus the translation of pipeline
errors into HTTP responses.
"""

import logging
from contextlib import contextmanager

from fastapi import HTTPException, Request

from ..core.errors import (
    InfrastructureUnavailableError,
    InvalidTransitionError,
    ProjectNotFoundError,
    SliceNotFoundError,
    UnsafePathError,
)

logger = logging.getLogger(__name__)


async def get_pipeline_service(request: Request):
    """Get PipelineService from app state."""
    service = request.app.state.pipeline_service
    if service is None:
        raise HTTPException(status_code=503, detail="Pipeline unavailable: DATABASE_URL not configured")
    return service


async def get_event_stream(request: Request):
    """Get EventStream from app state."""
    stream = request.app.state.event_stream
    if stream is None:
        raise HTTPException(status_code=503, detail="Event stream unavailable")
    return stream


async def get_current_user(request: Request) -> dict:
    """FastAPI dependency for authentication.

    Checks session for logged-in user. Returns user dict or raises 401.
    """
    session = request.session
    user_id = session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return {"user_id": user_id, "username": session.get("username")}


@contextmanager
def pipeline_errors():
    """Map pipeline exceptions onto HTTP status codes."""
    try:
        yield
    except (ProjectNotFoundError, SliceNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UnsafePathError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InfrastructureUnavailableError as e:
        logger.warning(f"Request failed, infrastructure unavailable: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
