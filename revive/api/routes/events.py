"""Agent event API routes: history, external append and live stream."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ...core.constants import EVENT_PAGE_SIZE
from ...core.events import to_sse
from ..deps import get_current_user, get_event_stream, get_pipeline_service, pipeline_errors
from ..schemas import AgentEventCreate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.get("/projects/{project_id}/events")
async def list_events(
    project_id: str,
    after: Optional[str] = Query(None, description="ISO timestamp cursor (inclusive)"),
    limit: int = Query(EVENT_PAGE_SIZE, ge=1, le=EVENT_PAGE_SIZE),
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        events = service.list_events(project_id, user["user_id"], after=after, limit=limit)
    return {"events": events, "count": len(events)}


@router.post("/projects/{project_id}/events", status_code=201)
async def append_event(
    project_id: str,
    body: AgentEventCreate,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.append_event(
            project_id,
            user["user_id"],
            body.event_type,
            body.content,
            slice_id=body.slice_id,
            metadata=body.metadata,
            confidence_delta=body.confidence_delta,
        )


@router.get("/projects/{project_id}/events/stream")
async def stream_events(
    project_id: str,
    after: Optional[str] = Query(None),
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
    stream=Depends(get_event_stream),
):
    with pipeline_errors():
        service.get_project(project_id, user["user_id"])

    def generate():
        for event in stream.iter_events(project_id, cursor=after):
            yield to_sse(event)

    logger.info(f"Opening event stream for project {project_id}")
    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
