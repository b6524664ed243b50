"""Dev-server state machine for generated projects."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import subprocess
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TypeAlias

import psutil

from appgen.core.errors import (
    AppGenError,
    DependencyInstallFailed,
    InvalidInput,
    ProjectNotFound,
    SpawnFailed,
)
from appgen.core.port_allocator import PortAllocator
from appgen.core.process_registry import ProcessRegistry
from appgen.core.processes import OSProcessHandle, ProcessHandle, terminate_tree
from appgen.models.project import ServerState

logger = logging.getLogger(__name__)

DEV_SERVER_LOG = ".devserver.log"
MAX_INSTALL_OUTPUT = 1400

TransitionListener: TypeAlias = Callable[[str, ServerState, dict[str, str | int | None]], Awaitable[None]]


@dataclass(slots=True)
class RuntimeStatus:
    """Point-in-time view of one project's dev server."""

    state: ServerState
    port: int | None
    pid: int | None
    process_alive: bool
    listening: bool


class DevServerRunner(Protocol):
    """Package manager and dev-server collaborator."""

    async def install(self, directory: Path, *, timeout: float) -> None:
        """Install dependencies or raise DependencyInstallFailed."""

    def spawn(self, directory: Path, port: int, log_path: Path) -> ProcessHandle:
        """Start the dev server detached from this process."""


class ReadinessProbe(Protocol):
    """Liveness check used while waiting for a spawned server."""

    async def __call__(self, host: str, port: int) -> bool:
        """Return True once something accepts connections on host:port."""


async def tcp_listening(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


def _detach_kwargs() -> dict[str, object]:
    if sys.platform == "win32":
        flags = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
        return {"creationflags": flags}
    return {"start_new_session": True}


def _truncate(output: str, limit: int = MAX_INSTALL_OUTPUT) -> str:
    output = output.strip()
    if len(output) > limit:
        return "... [truncated] " + output[-limit:]
    return output


class NpmDevServerRunner:
    """Run ``npm install`` and ``next dev`` as external processes."""

    def __init__(
        self,
        *,
        install_command: str = "npm install --no-audit --no-fund",
        dev_command: str = "npx next dev -p {port}",
        host: str = "127.0.0.1",
        terminate_timeout_seconds: float = 5.0,
    ) -> None:
        self._install_command = install_command
        self._dev_command = dev_command
        self._host = host
        self._terminate_timeout_seconds = terminate_timeout_seconds

    def install_argv(self) -> list[str]:
        return self._resolve(shlex.split(self._install_command))

    def dev_argv(self, port: int) -> list[str]:
        return self._resolve(shlex.split(self._dev_command.format(port=port, host=self._host)))

    async def install(self, directory: Path, *, timeout: float) -> None:
        command = self.install_argv()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **_detach_kwargs(),
            )
        except OSError as exc:
            msg = f"Could not run `{' '.join(command)}`: {exc}"
            raise DependencyInstallFailed(msg) from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as exc:
            await self._abandon(process)
            msg = f"`{' '.join(command)}` timed out after {timeout:.0f}s"
            raise DependencyInstallFailed(msg) from exc
        except asyncio.CancelledError:
            await self._abandon(process)
            raise

        if process.returncode != 0:
            output = _truncate(stdout.decode("utf-8", errors="replace"))
            msg = f"`{' '.join(command)}` failed with exit code {process.returncode}: {output}"
            raise DependencyInstallFailed(msg)

    def spawn(self, directory: Path, port: int, log_path: Path) -> ProcessHandle:
        env = os.environ.copy()
        env["PORT"] = str(port)
        with log_path.open("ab") as log_file:
            process = subprocess.Popen(
                self.dev_argv(port),
                cwd=str(directory),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                **_detach_kwargs(),
            )
        return OSProcessHandle.from_pid(process.pid)

    async def _abandon(self, process: asyncio.subprocess.Process) -> None:
        """Kill the install's whole process tree, then drain output for a bounded time."""
        try:
            root = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            root = None
        if root is not None:
            await asyncio.to_thread(terminate_tree, root, self._terminate_timeout_seconds)
        try:
            await asyncio.wait_for(process.communicate(), timeout=self._terminate_timeout_seconds)
        except TimeoutError:
            logger.warning("Abandoning install process %d; its output never closed", process.pid)

    @staticmethod
    def _resolve(argv: list[str]) -> list[str]:
        if not argv:
            msg = "Empty command template"
            raise InvalidInput(msg)
        # npm/npx are .cmd shims on Windows; which() finds them.
        executable = shutil.which(argv[0]) or argv[0]
        return [executable, *argv[1:]]


class ServerController:
    """Start, stop and restart project dev servers.

    ``stopped -> starting -> running -> stopping -> stopped``; any state may
    drop to ``failed`` and ``failed`` may start again. Operations on one
    project are serialized so a stop always completes before the next start.
    """

    def __init__(
        self,
        ports: PortAllocator,
        registry: ProcessRegistry,
        runner: DevServerRunner,
        *,
        host: str = "127.0.0.1",
        probe: ReadinessProbe | None = None,
        settle_delay_seconds: float = 1.0,
        install_timeout_seconds: float = 600.0,
        ready_timeout_seconds: float = 60.0,
        ready_poll_interval_seconds: float = 0.5,
    ) -> None:
        self._ports = ports
        self._registry = registry
        self._runner = runner
        self._host = host
        self._probe: ReadinessProbe = probe or tcp_listening
        self._settle_delay_seconds = settle_delay_seconds
        self._install_timeout_seconds = install_timeout_seconds
        self._ready_timeout_seconds = ready_timeout_seconds
        self._ready_poll_interval_seconds = ready_poll_interval_seconds
        self._states: dict[str, ServerState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[TransitionListener] = []

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def state(self, project_id: str) -> ServerState:
        return self._states.get(project_id, ServerState.STOPPED)

    def tracked_ids(self) -> list[str]:
        return sorted(self._states)

    def forget(self, project_id: str) -> None:
        self._states.pop(project_id, None)
        self._locks.pop(project_id, None)
        self._registry.forget(project_id)

    async def start(self, project_id: str, directory: Path, port: int) -> ServerState:
        async with self._lock(project_id):
            await self._require_workspace(project_id, directory)
            return await self._start_locked(project_id, directory, port)

    async def stop(self, project_id: str, port: int | None) -> ServerState:
        async with self._lock(project_id):
            return await self._stop_locked(project_id, port)

    async def restart(self, project_id: str, directory: Path, port: int) -> ServerState:
        async with self._lock(project_id):
            await self._require_workspace(project_id, directory)
            await self._stop_locked(project_id, port)
            return await self._start_locked(project_id, directory, port)

    async def stop_and_forget(
        self,
        project_id: str,
        port: int | None,
        cleanup: Callable[[], Awaitable[None]],
    ) -> None:
        """Stop the server, run ``cleanup`` and drop all state without releasing the lock.

        A start queued behind this call finds the workspace gone and fails with
        ProjectNotFound instead of spawning into a deleted directory.
        """
        async with self._lock(project_id):
            try:
                await self._stop_locked(project_id, port)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Stopping %s before cleanup failed: %s", project_id, exc)
            await cleanup()
            self.forget(project_id)

    async def status(self, project_id: str, port: int | None) -> RuntimeStatus:
        handle = self._registry.get(project_id)
        alive = await asyncio.to_thread(handle.is_running) if handle is not None else False
        listening = await self._probe(self._host, port) if port is not None else False
        return RuntimeStatus(
            state=self.state(project_id),
            port=port,
            pid=handle.pid if handle is not None else None,
            process_alive=alive,
            listening=listening,
        )

    async def _start_locked(self, project_id: str, directory: Path, port: int) -> ServerState:
        if self.state(project_id) is ServerState.RUNNING:
            handle = self._registry.get(project_id)
            if handle is not None and await asyncio.to_thread(handle.is_running):
                return ServerState.RUNNING
            logger.warning("Server for %s was running but its process is gone", project_id)

        await self._transition(project_id, ServerState.STARTING, port=port)
        try:
            await self._ports.kill_occupant(port)
            await asyncio.sleep(self._settle_delay_seconds)

            logger.info("Installing dependencies for %s", project_id)
            await self._runner.install(directory, timeout=self._install_timeout_seconds)

            logger.info("Starting dev server for %s on port %d", project_id, port)
            try:
                handle = await asyncio.to_thread(
                    self._runner.spawn, directory, port, directory / DEV_SERVER_LOG
                )
            except OSError as exc:
                msg = f"Failed to start dev server for {project_id}: {exc}"
                raise SpawnFailed(msg) from exc
            self._registry.record(project_id, handle)

            reason = await self._wait_until_ready(handle, port)
            if reason is not None:
                await self._registry.terminate(project_id, port)
                msg = f"Dev server for {project_id} {reason}"
                raise SpawnFailed(msg)
        except Exception as exc:
            message = exc.message if isinstance(exc, AppGenError) else str(exc)
            await self._transition(project_id, ServerState.FAILED, port=port, reason=message)
            raise

        await self._transition(project_id, ServerState.RUNNING, port=port, pid=handle.pid)
        return ServerState.RUNNING

    async def _stop_locked(self, project_id: str, port: int | None) -> ServerState:
        await self._transition(project_id, ServerState.STOPPING, port=port)
        had_handle = self._registry.get(project_id) is not None
        await self._registry.terminate(project_id, port)
        if had_handle and port is not None:
            # Detached children can outlive the recorded process.
            await self._ports.kill_occupant(port)
        await asyncio.sleep(self._settle_delay_seconds)
        await self._transition(project_id, ServerState.STOPPED, port=port)
        return ServerState.STOPPED

    async def _wait_until_ready(self, handle: ProcessHandle, port: int) -> str | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ready_timeout_seconds
        while True:
            if await self._probe(self._host, port):
                return None
            if not await asyncio.to_thread(handle.is_running):
                return "exited before accepting connections"
            if loop.time() >= deadline:
                return (
                    f"was not listening on {self._host}:{port} "
                    f"after {self._ready_timeout_seconds:.0f}s"
                )
            await asyncio.sleep(self._ready_poll_interval_seconds)

    async def _transition(
        self,
        project_id: str,
        state: ServerState,
        **payload: str | int | None,
    ) -> None:
        previous = self.state(project_id)
        self._states[project_id] = state
        logger.info("Server %s: %s -> %s", project_id, previous.value, state.value)
        for listener in self._listeners:
            try:
                await listener(project_id, state, payload)
            except Exception:  # noqa: BLE001
                logger.exception("Transition listener failed for %s", project_id)

    @staticmethod
    async def _require_workspace(project_id: str, directory: Path) -> None:
        if not await asyncio.to_thread(directory.is_dir):
            raise ProjectNotFound(project_id)

    def _lock(self, project_id: str) -> asyncio.Lock:
        return self._locks.setdefault(project_id, asyncio.Lock())
