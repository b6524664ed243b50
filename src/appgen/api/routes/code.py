"""Code routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from appgen.api.deps import get_project_manager
from appgen.api.schemas.code import WriteFileRequest
from appgen.core.project_manager import ProjectManager

router = APIRouter(prefix="/api/v1/projects/{project_id}/files", tags=["code"])


@router.put("/{file_path:path}")
async def write_file(
    project_id: str,
    file_path: str,
    request: WriteFileRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> dict[str, str]:
    await manager.update_file(project_id, file_path, request.content)
    return {"status": "updated"}
