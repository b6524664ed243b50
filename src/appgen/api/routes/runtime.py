"""Runtime routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from appgen.api.deps import get_project_manager
from appgen.api.schemas.runtime import (
    RuntimeStartRequest,
    RuntimeStateResponse,
    RuntimeStatusResponse,
)
from appgen.core.project_manager import ProjectManager

router = APIRouter(prefix="/api/v1/projects/{project_id}/runtime", tags=["runtime"])


@router.post("/start", response_model=RuntimeStateResponse)
async def runtime_start(
    project_id: str,
    request: RuntimeStartRequest | None = None,
    manager: ProjectManager = Depends(get_project_manager),
) -> RuntimeStateResponse:
    override = request.port if request is not None else None
    state = await manager.start_project(project_id, override)
    port = override or await manager.ports.port_of(project_id)
    return RuntimeStateResponse(project_id=project_id, state=state, port=port)


@router.post("/stop", response_model=RuntimeStateResponse)
async def runtime_stop(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> RuntimeStateResponse:
    state = await manager.stop_project(project_id)
    return RuntimeStateResponse(project_id=project_id, state=state)


@router.post("/restart", response_model=RuntimeStateResponse)
async def runtime_restart(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> RuntimeStateResponse:
    state = await manager.restart_project(project_id)
    port = await manager.ports.port_of(project_id)
    return RuntimeStateResponse(project_id=project_id, state=state, port=port)


@router.get("/status", response_model=RuntimeStatusResponse)
async def runtime_status(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> RuntimeStatusResponse:
    status = await manager.project_status(project_id)
    return RuntimeStatusResponse(
        project_id=project_id,
        state=status.state,
        port=status.port,
        pid=status.pid,
        process_alive=status.process_alive,
        listening=status.listening,
    )
