"""Project pipeline API routes."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query

from ..deps import get_current_user, get_pipeline_service, pipeline_errors
from ..schemas import ConfigureRequest, ProjectCreate, RetryResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["projects"])


@router.post("/projects", status_code=201)
async def create_project(
    body: ProjectCreate,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.create_project(
            user["user_id"], body.name, body.source_url, body.target_framework, body.metadata
        )


@router.get("/projects/{project_id}")
async def get_project(
    project_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.get_project(project_id, user["user_id"])


@router.get("/projects/{project_id}/slices")
async def list_slices(
    project_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        slices = service.list_slices(project_id, user["user_id"])
    return {"slices": slices, "count": len(slices)}


@router.post("/projects/{project_id}/process", status_code=202)
async def start_processing(
    project_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.start_processing(project_id, user["user_id"])


@router.post("/projects/{project_id}/configure", status_code=202)
async def configure(
    project_id: str,
    body: ConfigureRequest,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.configure(
            project_id,
            user["user_id"],
            boilerplate_url=body.boilerplate_url,
            tech_preferences=body.tech_preferences,
            auto_build=body.auto_build,
        )


@router.post("/projects/{project_id}/build", status_code=202)
async def start_build(
    project_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.start_build(project_id, user["user_id"])


@router.post("/projects/{project_id}/retry", status_code=202, response_model=RetryResponse)
async def retry_project(
    project_id: str,
    mode: Literal["auto", "resume", "restart"] = Query("auto"),
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        action = service.resume_or_restart(project_id, user["user_id"], mode)
        project = service.get_project(project_id, user["user_id"])
    logger.info(f"Project {project_id} {action} (mode={mode})")
    return {"action": action, "project": project}


@router.post("/projects/{project_id}/pause")
async def pause(
    project_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.pause(project_id, user["user_id"])


@router.post("/projects/{project_id}/slices/{slice_id}/retry", status_code=202)
async def retry_slice(
    project_id: str,
    slice_id: str,
    user: dict = Depends(get_current_user),
    service=Depends(get_pipeline_service),
):
    with pipeline_errors():
        return service.retry_slice(project_id, slice_id, user["user_id"])
