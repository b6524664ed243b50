"""Event API schemas."""

from __future__ import annotations

from pydantic import BaseModel

from appgen.models.events import LifecycleEvent


class EventsResponse(BaseModel):
    """Collection response for lifecycle events."""

    items: list[LifecycleEvent]
