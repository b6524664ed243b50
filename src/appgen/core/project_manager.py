"""Project lifecycle management."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from appgen.config import Settings
from appgen.core.decoder import decode_generated_files
from appgen.core.errors import (
    AlreadyExists,
    CorruptManifest,
    GenerationFailed,
    InvalidInput,
    ProjectNotFound,
)
from appgen.core.generation import (
    CodeGenerator,
    GeminiCodeGenerator,
    GenerationRequest,
    build_prompt,
)
from appgen.core.naming import make_project_id
from appgen.core.port_allocator import PortAllocator, PortKiller
from appgen.core.process_registry import ProcessRegistry
from appgen.core.scaffold import merge_scaffold, stamp_manifest
from appgen.core.server_controller import (
    DevServerRunner,
    NpmDevServerRunner,
    ReadinessProbe,
    RuntimeStatus,
    ServerController,
)
from appgen.core.workspace_store import WorkspaceStore
from appgen.db.store import EventStore
from appgen.models.events import EventType, LifecycleEvent
from appgen.models.project import Project, ServerState

logger = logging.getLogger(__name__)

MODEL_PATTERN = re.compile(r"(models/)?[A-Za-z0-9._-]+")
DEFAULT_IMAGE_TYPES = ("image/png", "image/jpeg", "image/webp", "image/gif")

_STATE_EVENTS = {
    ServerState.STARTING: EventType.SERVER_STARTING,
    ServerState.RUNNING: EventType.SERVER_RUNNING,
    ServerState.STOPPED: EventType.SERVER_STOPPED,
    ServerState.FAILED: EventType.SERVER_FAILED,
}


@dataclass(slots=True)
class ImagePayload:
    """Screenshot attached to a creation request."""

    data: bytes
    mime_type: str

    @classmethod
    def from_base64(cls, data: str, mime_type: str) -> ImagePayload:
        if "," in data and data.lstrip().startswith("data:"):
            data = data.split(",", 1)[1]
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = "Image payload is not valid base64"
            raise InvalidInput(msg) from exc
        return cls(data=raw, mime_type=mime_type)


@dataclass(slots=True)
class CreateProjectInput:
    """Input payload for project creation."""

    description: str | None = None
    image: ImagePayload | None = None
    api_key: str | None = None
    model: str | None = None


class ProjectManager:
    """Create, run, edit and delete generated projects."""

    def __init__(
        self,
        *,
        workspaces: WorkspaceStore,
        ports: PortAllocator,
        registry: ProcessRegistry,
        controller: ServerController,
        generator: CodeGenerator,
        events: EventStore,
        default_model: str = "gemini-1.5-flash",
        max_image_bytes: int = 5 * 1024 * 1024,
        allowed_image_types: Sequence[str] = DEFAULT_IMAGE_TYPES,
        id_attempts: int = 3,
    ) -> None:
        self._workspaces = workspaces
        self._ports = ports
        self._registry = registry
        self._controller = controller
        self._generator = generator
        self._events = events
        self._default_model = default_model
        self._max_image_bytes = max_image_bytes
        self._allowed_image_types = frozenset(allowed_image_types)
        self._id_attempts = max(1, id_attempts)
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._controller.subscribe(self._record_transition)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        generator: CodeGenerator | None = None,
        runner: DevServerRunner | None = None,
        killer: PortKiller | None = None,
        probe: ReadinessProbe | None = None,
    ) -> ProjectManager:
        workspaces = WorkspaceStore(settings.workspace_root)
        ports = PortAllocator(
            workspaces,
            base_port=settings.base_port,
            killer=killer,
            terminate_timeout_seconds=settings.terminate_timeout_seconds,
        )
        registry = ProcessRegistry(
            ports, terminate_timeout_seconds=settings.terminate_timeout_seconds
        )
        controller = ServerController(
            ports,
            registry,
            runner
            or NpmDevServerRunner(
                install_command=settings.install_command,
                dev_command=settings.dev_command,
                host=settings.dev_host,
                terminate_timeout_seconds=settings.terminate_timeout_seconds,
            ),
            host=settings.dev_host,
            probe=probe,
            settle_delay_seconds=settings.settle_delay_seconds,
            install_timeout_seconds=settings.install_timeout_seconds,
            ready_timeout_seconds=settings.ready_timeout_seconds,
            ready_poll_interval_seconds=settings.ready_poll_interval_seconds,
        )
        return cls(
            workspaces=workspaces,
            ports=ports,
            registry=registry,
            controller=controller,
            generator=generator
            or GeminiCodeGenerator(
                base_url=settings.generation_base_url,
                timeout_seconds=settings.generation_timeout_seconds,
            ),
            events=EventStore(settings.db_path),
            default_model=settings.default_model,
            max_image_bytes=settings.max_image_bytes,
            allowed_image_types=settings.allowed_image_types,
        )

    @property
    def workspaces(self) -> WorkspaceStore:
        return self._workspaces

    @property
    def ports(self) -> PortAllocator:
        return self._ports

    @property
    def controller(self) -> ServerController:
        return self._controller

    async def bootstrap(self) -> None:
        """Keep new ports above every port already persisted on disk."""
        count = 0
        async for summary in self._workspaces.iter_projects():
            if summary.manifest is not None:
                self._ports.observe(summary.manifest.port)
                count += 1
        logger.info("Found %d existing project(s) under %s", count, self._workspaces.root)

    async def create_project(self, payload: CreateProjectInput) -> Project:
        model = self._validate(payload)
        request = GenerationRequest(
            prompt=build_prompt(payload.description, has_image=payload.image is not None),
            model=model,
            api_key=payload.api_key or "",
            image=payload.image.data if payload.image else None,
            image_mime_type=payload.image.mime_type if payload.image else None,
        )

        logger.info("Generating code with %s", model)
        try:
            raw = await self._generator.generate(request)
        except GenerationFailed:
            raise
        except Exception as exc:
            msg = f"Code generation failed: {exc.__class__.__name__}: {exc}"
            raise GenerationFailed(msg) from exc

        files = merge_scaffold(decode_generated_files(raw))

        project_id, directory = await self._allocate_workspace(payload.description)
        port = self._ports.next_port()
        files = stamp_manifest(files, project_id=project_id, port=port)
        logger.info("Writing %d file(s) for %s (port %d)", len(files), project_id, port)
        await self._workspaces.write_files(project_id, files)
        await self._append(
            project_id, EventType.PROJECT_CREATED, {"port": port, "files": len(files), "model": model}
        )

        state = await self._controller.start(project_id, directory, port)
        return Project(
            id=project_id,
            name=project_id,
            directory=directory,
            port=port,
            files=files,
            server_state=state,
        )

    async def list_projects(self) -> list[Project]:
        projects: list[Project] = []
        async for summary in self._workspaces.iter_projects():
            if summary.manifest is None:
                logger.warning("Skipping workspace %s: %s", summary.id, summary.error)
                continue
            projects.append(
                Project(
                    id=summary.id,
                    name=summary.manifest.name,
                    directory=summary.directory,
                    port=summary.manifest.port,
                    files=summary.files,
                    server_state=self._controller.state(summary.id),
                )
            )
        return projects

    async def get_project(self, project_id: str) -> Project:
        directory = self._require(project_id)
        manifest = await self._workspaces.read_manifest(project_id)
        return Project(
            id=project_id,
            name=manifest.name,
            directory=directory,
            port=manifest.port,
            files=await self._workspaces.read_files(project_id),
            server_state=self._controller.state(project_id),
        )

    async def update_file(self, project_id: str, rel_path: str, content: str) -> None:
        self._require(project_id)
        async with self._write_lock(project_id):
            await self._workspaces.write_file(project_id, rel_path, content)
        await self._append(project_id, EventType.PROJECT_FILE_UPDATED, {"path": rel_path})

    async def start_project(self, project_id: str, port: int | None = None) -> ServerState:
        directory = self._require(project_id)
        if port is None:
            port = await self._ports.port_of(project_id)
        return await self._controller.start(project_id, directory, port)

    async def stop_project(self, project_id: str) -> ServerState:
        self._require(project_id)
        return await self._controller.stop(project_id, await self._port_or_none(project_id))

    async def restart_project(self, project_id: str) -> ServerState:
        directory = self._require(project_id)
        port = await self._ports.port_of(project_id)
        return await self._controller.restart(project_id, directory, port)

    async def project_status(self, project_id: str) -> RuntimeStatus:
        self._require(project_id)
        return await self._controller.status(project_id, await self._port_or_none(project_id))

    async def stop_all_projects(self) -> list[str]:
        project_ids = [summary.id async for summary in self._workspaces.iter_projects()]
        await asyncio.gather(*(self.stop_project(project_id) for project_id in project_ids))
        return project_ids

    async def delete_project(self, project_id: str) -> None:
        self._require(project_id)
        port = await self._port_or_none(project_id)

        async def remove_workspace() -> None:
            async with self._write_lock(project_id):
                await self._workspaces.remove(project_id)

        # Start requests queued behind the delete see the workspace gone.
        await self._controller.stop_and_forget(project_id, port, remove_workspace)
        self._write_locks.pop(project_id, None)
        await self._append(project_id, EventType.PROJECT_DELETED, {"port": port})
        logger.info("Deleted project %s", project_id)

    async def download(self, project_id: str) -> bytes:
        self._require(project_id)
        return await self._workspaces.archive(project_id)

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
    ) -> list[LifecycleEvent]:
        return await self._events.list_events(project_id=project_id, event_type=event_type)

    def _validate(self, payload: CreateProjectInput) -> str:
        description = (payload.description or "").strip()
        if not description and payload.image is None:
            msg = "A description or an image is required"
            raise InvalidInput(msg)
        if not payload.api_key or not payload.api_key.strip():
            msg = "An API key is required"
            raise InvalidInput(msg)

        model = (payload.model or self._default_model).strip()
        if not MODEL_PATTERN.fullmatch(model):
            msg = f"Invalid model identifier: {model!r}"
            raise InvalidInput(msg)

        image = payload.image
        if image is not None:
            if image.mime_type not in self._allowed_image_types:
                allowed = ", ".join(sorted(self._allowed_image_types))
                msg = f"Unsupported image type {image.mime_type!r}; allowed: {allowed}"
                raise InvalidInput(msg)
            if not image.data:
                msg = "Image payload is empty"
                raise InvalidInput(msg)
            if len(image.data) > self._max_image_bytes:
                msg = f"Image exceeds {self._max_image_bytes} bytes"
                raise InvalidInput(msg)
        return model

    async def _allocate_workspace(self, description: str | None) -> tuple[str, Path]:
        project_id = ""
        for attempt in range(self._id_attempts):
            project_id = make_project_id(description, offset=attempt)
            try:
                directory = await self._workspaces.create(project_id)
            except AlreadyExists:
                logger.warning("Project id %s is taken, picking another", project_id)
                continue
            return project_id, directory
        raise AlreadyExists(project_id)

    def _require(self, project_id: str) -> Path:
        directory = self._workspaces.path_of(project_id)
        if not directory.is_dir():
            raise ProjectNotFound(project_id)
        return directory

    async def _port_or_none(self, project_id: str) -> int | None:
        try:
            return await self._ports.port_of(project_id)
        except (CorruptManifest, ProjectNotFound) as exc:
            logger.warning("No usable port for %s: %s", project_id, exc)
            return None

    def _write_lock(self, project_id: str) -> asyncio.Lock:
        return self._write_locks.setdefault(project_id, asyncio.Lock())

    async def _record_transition(
        self,
        project_id: str,
        state: ServerState,
        payload: dict[str, str | int | None],
    ) -> None:
        event_type = _STATE_EVENTS.get(state)
        if event_type is not None:
            await self._append(project_id, event_type, payload)

    async def _append(
        self,
        project_id: str,
        event_type: EventType,
        payload: dict[str, str | int | None] | None = None,
    ) -> None:
        await self._events.append_event(
            LifecycleEvent(project_id=project_id, event_type=event_type, payload=payload or {})
        )
