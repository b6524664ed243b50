"""Project routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from appgen.api.deps import get_project_manager
from appgen.api.schemas.projects import CreateProjectRequest, ProjectsResponse, StopAllResponse
from appgen.core.project_manager import CreateProjectInput, ImagePayload, ProjectManager
from appgen.models.project import Project

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@router.get("", response_model=ProjectsResponse)
async def list_projects(manager: ProjectManager = Depends(get_project_manager)) -> ProjectsResponse:
    return ProjectsResponse(items=await manager.list_projects())


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Project)
async def create_project(
    request: CreateProjectRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> Project:
    image = (
        ImagePayload.from_base64(request.image.data, request.image.mime_type)
        if request.image is not None
        else None
    )
    return await manager.create_project(
        CreateProjectInput(
            description=request.input,
            image=image,
            api_key=request.api_key,
            model=request.model,
        )
    )


@router.post("/stop-all", response_model=StopAllResponse)
async def stop_all_projects(
    manager: ProjectManager = Depends(get_project_manager),
) -> StopAllResponse:
    return StopAllResponse(stopped=await manager.stop_all_projects())


@router.get("/{project_id}", response_model=Project)
async def get_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> Project:
    return await manager.get_project(project_id)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> None:
    await manager.delete_project(project_id)


@router.get("/{project_id}/download")
async def download_project_archive(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> Response:
    archive = await manager.download(project_id)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="code-generator-{project_id}.zip"'},
    )
