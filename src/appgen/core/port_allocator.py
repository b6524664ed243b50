"""Port issuing for new projects and cleanup of stale port occupants."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from typing import Protocol

import psutil

from appgen.core.processes import terminate_tree
from appgen.core.workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT = 3001


class PortKiller(Protocol):
    """Platform strategy that frees a TCP port."""

    def __call__(self, port: int, timeout: float) -> list[int]:
        """Terminate every process listening on ``port``; return their pids."""


class PsutilPortKiller:
    """Find listeners with psutil and terminate their process trees."""

    def __call__(self, port: int, timeout: float) -> list[int]:
        killed: list[int] = []
        for pid in self.listener_pids(port):
            if pid == os.getpid():
                continue
            if self._terminate_pid(pid, timeout):
                killed.append(pid)
        return killed

    @staticmethod
    def listener_pids(port: int) -> list[int]:
        pids: set[int] = set()
        for conn in psutil.net_connections(kind="inet"):
            if conn.status != psutil.CONN_LISTEN or not conn.laddr or not conn.pid:
                continue
            if conn.laddr.port == port:
                pids.add(conn.pid)
        return sorted(pids)

    def _terminate_pid(self, pid: int, timeout: float) -> bool:
        try:
            process = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return False
        return terminate_tree(process, timeout)


class TaskkillPortKiller(PsutilPortKiller):
    """Windows variant: ``taskkill /T`` releases the whole tree and its file locks."""

    def _terminate_pid(self, pid: int, timeout: float) -> bool:
        completed = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        return completed.returncode == 0


def default_port_killer() -> PortKiller:
    if sys.platform == "win32":
        return TaskkillPortKiller()
    return PsutilPortKiller()


class PortAllocator:
    """Issue monotonically increasing ports and resolve persisted ones."""

    def __init__(
        self,
        workspaces: WorkspaceStore,
        *,
        base_port: int = DEFAULT_BASE_PORT,
        killer: PortKiller | None = None,
        kill_attempts: int = 3,
        kill_backoff_seconds: float = 0.25,
        terminate_timeout_seconds: float = 5.0,
    ) -> None:
        self._workspaces = workspaces
        self._next_port = base_port
        self._last_assigned: int | None = None
        self._killer = killer or default_port_killer()
        self._kill_attempts = max(1, kill_attempts)
        self._kill_backoff_seconds = kill_backoff_seconds
        self._terminate_timeout_seconds = terminate_timeout_seconds

    @property
    def last_assigned(self) -> int | None:
        return self._last_assigned

    def next_port(self) -> int:
        # No await in here: concurrent creates cannot observe the same value.
        port = self._next_port
        self._next_port += 1
        self._last_assigned = port
        return port

    def observe(self, port: int) -> None:
        """Never hand out ``port`` or anything below it from now on."""
        if port >= self._next_port:
            self._next_port = port + 1

    async def port_of(self, project_id: str) -> int:
        manifest = await self._workspaces.read_manifest(project_id)
        return manifest.port

    async def kill_occupant(self, port: int) -> list[int]:
        """Best-effort: terminate whatever listens on ``port``. Never raises."""
        killed: list[int] = []
        for attempt in range(1, self._kill_attempts + 1):
            try:
                pids = await asyncio.to_thread(
                    self._killer, port, self._terminate_timeout_seconds
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Freeing port %d failed (attempt %d/%d): %s",
                    port,
                    attempt,
                    self._kill_attempts,
                    exc,
                )
            else:
                if not pids:
                    return killed
                logger.info("Terminated pid(s) %s listening on port %d", pids, port)
                killed.extend(pids)
            if attempt < self._kill_attempts:
                await asyncio.sleep(self._kill_backoff_seconds * attempt)
        return killed
