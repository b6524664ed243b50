"""Project id to dev-server process handle mapping."""

from __future__ import annotations

import asyncio
import logging

from appgen.core.port_allocator import PortAllocator
from appgen.core.processes import ProcessHandle

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Remember which process serves each project so it can be stopped.

    Handles are references, not ownership. When no handle is known (the
    coordinator restarted, say) the project's port is the fallback identity.
    """

    def __init__(self, ports: PortAllocator, *, terminate_timeout_seconds: float = 5.0) -> None:
        self._ports = ports
        self._handles: dict[str, ProcessHandle] = {}
        self._terminate_timeout_seconds = terminate_timeout_seconds

    def record(self, project_id: str, handle: ProcessHandle) -> None:
        previous = self._handles.get(project_id)
        if previous is not None and previous.pid != handle.pid:
            logger.debug("Replacing pid %d with %d for %s", previous.pid, handle.pid, project_id)
        self._handles[project_id] = handle

    def get(self, project_id: str) -> ProcessHandle | None:
        return self._handles.get(project_id)

    def forget(self, project_id: str) -> ProcessHandle | None:
        return self._handles.pop(project_id, None)

    def ids(self) -> list[str]:
        return sorted(self._handles)

    async def terminate(self, project_id: str, port: int | None = None) -> bool:
        """Stop the project's server; idempotent and never raises."""
        handle = self._handles.pop(project_id, None)
        if handle is None:
            if port is None:
                logger.info("No process recorded for %s and no port to fall back on", project_id)
                return False
            return bool(await self._ports.kill_occupant(port))

        try:
            terminated = await asyncio.to_thread(handle.terminate, self._terminate_timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Terminating pid %d for %s failed: %s", handle.pid, project_id, exc)
            return False
        if not terminated:
            logger.warning("Process %d for %s had already exited", handle.pid, project_id)
        return terminated
