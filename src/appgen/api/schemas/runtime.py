"""Runtime API schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from appgen.models.project import ServerState


class RuntimeStartRequest(BaseModel):
    """Optional port override for a single run."""

    port: int | None = Field(default=None, gt=0, lt=65536)


class RuntimeStateResponse(BaseModel):
    """State after a start/stop/restart."""

    project_id: str
    state: ServerState
    port: int | None = None


class RuntimeStatusResponse(BaseModel):
    """Detailed dev-server status."""

    project_id: str
    state: ServerState
    port: int | None
    pid: int | None
    process_alive: bool
    listening: bool
