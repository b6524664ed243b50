"""Project API schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field

from appgen.models.project import Project


class ImageInput(BaseModel):
    """Base64 screenshot, optionally as a ``data:`` URL."""

    mime_type: str
    data: str


class CreateProjectRequest(BaseModel):
    """Payload for generating a new project."""

    input: str | None = None
    image: ImageInput | None = None
    api_key: str | None = Field(default=None, repr=False)
    model: str | None = None


class ProjectsResponse(BaseModel):
    """Collection response for projects."""

    items: list[Project]


class StopAllResponse(BaseModel):
    """Projects asked to stop."""

    stopped: list[str]
