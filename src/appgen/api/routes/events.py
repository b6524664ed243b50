"""Lifecycle event routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from appgen.api.deps import get_project_manager
from appgen.api.schemas.events import EventsResponse
from appgen.core.project_manager import ProjectManager
from appgen.models.events import EventType

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.get("", response_model=EventsResponse)
async def list_events(
    project_id: str | None = None,
    event_type: EventType | None = None,
    manager: ProjectManager = Depends(get_project_manager),
) -> EventsResponse:
    return EventsResponse(
        items=await manager.list_events(project_id=project_id, event_type=event_type)
    )
