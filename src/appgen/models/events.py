"""Lifecycle event models for the appgen audit log."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event categories emitted by the lifecycle components."""

    PROJECT_CREATED = "project.created"
    PROJECT_FILE_UPDATED = "project.file_updated"
    PROJECT_DELETED = "project.deleted"
    SERVER_STARTING = "server.starting"
    SERVER_RUNNING = "server.running"
    SERVER_STOPPED = "server.stopped"
    SERVER_FAILED = "server.failed"


class LifecycleEvent(BaseModel):
    """Append-only event describing a project or server transition."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    event_type: EventType
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
