"""FastAPI application factory for Revive.

Creates and configures the FastAPI app with CORS, session identity,
and the pipeline route modules registered.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

logger = logging.getLogger(__name__)


def create_app(
    db_manager,
    pipeline_service,
    event_stream=None,
    settings=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_manager: DatabaseManager instance (None when DATABASE_URL is unset)
        pipeline_service: PipelineService instance (None disables pipeline routes)
        event_stream: EventStream for the SSE endpoint (optional)
        settings: PipelineSettings (optional, defaults from environment)

    Returns:
        Configured FastAPI application
    """
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    app = FastAPI(
        title="Revive API",
        description="Legacy codebase migration pipeline",
        version="0.1.0",
    )

    # Session middleware (identity is issued by the auth service)
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)

    # CORS for the dashboard dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store shared dependencies on app state
    app.state.db_manager = db_manager
    app.state.pipeline_service = pipeline_service
    app.state.event_stream = event_stream

    from .routes.projects import router as projects_router
    from .routes.events import router as events_router

    app.include_router(projects_router, prefix="/api")
    app.include_router(events_router, prefix="/api")

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "ok",
            "service": "revive",
            "database": db_manager is not None,
            "queue": bool(pipeline_service is not None and pipeline_service.queue.available),
        }

    logger.info("FastAPI app created with all routes registered")
    return app
