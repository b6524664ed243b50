"""Project domain models."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class ServerState(str, Enum):
    """Lifecycle state of a project's dev server."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class Manifest(BaseModel):
    """Persisted project descriptor read from ``package.json``."""

    name: str
    port: int


class Project(BaseModel):
    """Generated application instance backed by a workspace directory."""

    id: str
    name: str
    directory: Path
    port: int
    files: dict[str, str] = Field(default_factory=dict)
    server_state: ServerState = ServerState.STOPPED
