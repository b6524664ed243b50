import asyncio
import shutil
import sys
import time
from pathlib import Path

import pytest

from appgen.core import server_controller
from appgen.core.errors import DependencyInstallFailed, ProjectNotFound, SpawnFailed
from appgen.core.port_allocator import PortAllocator
from appgen.core.process_registry import ProcessRegistry
from appgen.core.server_controller import (
    DEV_SERVER_LOG,
    NpmDevServerRunner,
    ServerController,
    tcp_listening,
)
from appgen.core.workspace_store import WorkspaceStore
from appgen.models.project import ServerState
from tests.support.lifecycle_fakes import FakeKiller, FakeProbe, FakeRunner, FakeSystem


class _Harness:
    def __init__(self, tmp_path: Path, runner: FakeRunner | None = None, system: FakeSystem | None = None) -> None:
        self.system = system or FakeSystem()
        self.killer = FakeKiller(self.system)
        self.ports = PortAllocator(
            WorkspaceStore(tmp_path / "projects"), killer=self.killer, kill_backoff_seconds=0
        )
        self.registry = ProcessRegistry(self.ports, terminate_timeout_seconds=0.1)
        self.runner = runner or FakeRunner(self.system)
        self.controller = ServerController(
            self.ports,
            self.registry,
            self.runner,
            probe=FakeProbe(self.system),
            settle_delay_seconds=0,
            ready_timeout_seconds=0.05,
            ready_poll_interval_seconds=0.01,
        )
        self.transitions: list[tuple[str, ServerState]] = []
        self.directory = tmp_path / "demo"
        self.directory.mkdir()

        async def listener(project_id: str, state: ServerState, payload: dict) -> None:
            del payload
            self.transitions.append((project_id, state))

        self.controller.subscribe(listener)


@pytest.mark.asyncio
async def test_start_frees_port_installs_then_spawns(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.system.bind(3001, 555)

    state = await h.controller.start("demo", h.directory, 3001)

    assert state is ServerState.RUNNING
    assert h.controller.state("demo") is ServerState.RUNNING
    assert h.killer.calls[0] == 3001
    assert h.runner.installs == [h.directory]
    assert h.runner.spawns == [(h.directory, 3001)]
    assert h.system.listening(3001) == [h.runner.handles[0].pid]
    assert h.registry.get("demo") is h.runner.handles[0]
    assert h.transitions == [("demo", ServerState.STARTING), ("demo", ServerState.RUNNING)]


@pytest.mark.asyncio
async def test_start_when_running_is_a_no_op(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)

    assert await h.controller.start("demo", h.directory, 3001) is ServerState.RUNNING
    assert len(h.runner.spawns) == 1


@pytest.mark.asyncio
async def test_start_after_process_died_respawns(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)
    h.runner.handles[0].terminate(0)

    assert await h.controller.start("demo", h.directory, 3001) is ServerState.RUNNING
    assert len(h.runner.spawns) == 2


@pytest.mark.asyncio
async def test_install_failure_marks_failed(tmp_path: Path) -> None:
    system = FakeSystem()
    runner = FakeRunner(system, install_error=DependencyInstallFailed("npm exploded"))
    h = _Harness(tmp_path, runner, system)

    with pytest.raises(DependencyInstallFailed):
        await h.controller.start("demo", h.directory, 3001)

    assert h.controller.state("demo") is ServerState.FAILED
    assert runner.spawns == []
    assert h.transitions[-1] == ("demo", ServerState.FAILED)


@pytest.mark.asyncio
async def test_spawn_os_error_becomes_spawn_failed(tmp_path: Path) -> None:
    system = FakeSystem()
    runner = FakeRunner(system, spawn_error=FileNotFoundError("npx"))
    h = _Harness(tmp_path, runner, system)

    with pytest.raises(SpawnFailed, match="npx"):
        await h.controller.start("demo", h.directory, 3001)
    assert h.controller.state("demo") is ServerState.FAILED


@pytest.mark.asyncio
async def test_server_that_never_listens_fails_and_is_terminated(tmp_path: Path) -> None:
    system = FakeSystem()
    runner = FakeRunner(system, binds_port=False)
    h = _Harness(tmp_path, runner, system)

    with pytest.raises(SpawnFailed, match="was not listening"):
        await h.controller.start("demo", h.directory, 3001)

    assert h.controller.state("demo") is ServerState.FAILED
    assert runner.handles[0].alive is False
    assert h.registry.get("demo") is None


@pytest.mark.asyncio
async def test_server_that_exits_early_fails(tmp_path: Path) -> None:
    system = FakeSystem()
    runner = FakeRunner(system, exits_immediately=True)
    h = _Harness(tmp_path, runner, system)

    with pytest.raises(SpawnFailed, match="exited before accepting connections"):
        await h.controller.start("demo", h.directory, 3001)
    assert h.controller.state("demo") is ServerState.FAILED


@pytest.mark.asyncio
async def test_failed_server_can_start_again(tmp_path: Path) -> None:
    system = FakeSystem()
    runner = FakeRunner(system, install_error=DependencyInstallFailed("offline"))
    h = _Harness(tmp_path, runner, system)
    with pytest.raises(DependencyInstallFailed):
        await h.controller.start("demo", h.directory, 3001)

    runner.install_error = None

    assert await h.controller.start("demo", h.directory, 3001) is ServerState.RUNNING


@pytest.mark.asyncio
async def test_stop_terminates_and_frees_port(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)

    assert await h.controller.stop("demo", 3001) is ServerState.STOPPED

    assert h.runner.handles[0].alive is False
    assert h.system.listening(3001) == []
    assert h.transitions[-2:] == [("demo", ServerState.STOPPING), ("demo", ServerState.STOPPED)]


@pytest.mark.asyncio
async def test_stop_without_handle_falls_back_to_port(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    h.system.bind(3009, 777)

    assert await h.controller.stop("orphan", 3009) is ServerState.STOPPED
    assert h.system.listening(3009) == []


@pytest.mark.asyncio
async def test_stop_with_nothing_to_stop_still_succeeds(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    assert await h.controller.stop("ghost", None) is ServerState.STOPPED


@pytest.mark.asyncio
async def test_restart_leaves_exactly_one_listener(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)

    assert await h.controller.restart("demo", h.directory, 3001) is ServerState.RUNNING

    assert len(h.runner.handles) == 2
    assert h.runner.handles[0].alive is False
    assert h.system.listening(3001) == [h.runner.handles[1].pid]


@pytest.mark.asyncio
async def test_concurrent_start_and_stop_serialize(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    await asyncio.gather(
        h.controller.start("demo", h.directory, 3001),
        h.controller.stop("demo", 3001),
    )

    states = [state for _, state in h.transitions]
    assert states == [
        ServerState.STARTING,
        ServerState.RUNNING,
        ServerState.STOPPING,
        ServerState.STOPPED,
    ]
    assert h.system.listening(3001) == []


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_transitions(tmp_path: Path) -> None:
    h = _Harness(tmp_path)

    async def broken(project_id: str, state: ServerState, payload: dict) -> None:
        raise RuntimeError("listener down")

    h.controller.subscribe(broken)

    assert await h.controller.start("demo", h.directory, 3001) is ServerState.RUNNING


@pytest.mark.asyncio
async def test_status_reports_process_and_listener(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)

    status = await h.controller.status("demo", 3001)

    assert status.state is ServerState.RUNNING
    assert status.pid == h.runner.handles[0].pid
    assert status.process_alive is True
    assert status.listening is True

    await h.controller.stop("demo", 3001)
    stopped = await h.controller.status("demo", 3001)
    assert stopped.pid is None
    assert stopped.listening is False


@pytest.mark.asyncio
async def test_forget_clears_state_and_handle(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)
    assert h.controller.tracked_ids() == ["demo"]

    h.controller.forget("demo")

    assert h.controller.state("demo") is ServerState.STOPPED
    assert h.controller.tracked_ids() == []
    assert h.registry.get("demo") is None


def test_dev_argv_formats_port(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(server_controller.shutil, "which", lambda name: f"/usr/bin/{name}")
    runner = NpmDevServerRunner(dev_command="npx next dev -p {port} -H {host}", host="127.0.0.1")

    assert runner.dev_argv(3004) == ["/usr/bin/npx", "next", "dev", "-p", "3004", "-H", "127.0.0.1"]


class _FakeInstallProcess:
    def __init__(self, returncode: int, output: bytes) -> None:
        self.returncode = returncode
        self._output = output

    async def communicate(self) -> tuple[bytes, None]:
        return self._output, None


@pytest.mark.asyncio
async def test_npm_install_reports_exit_code(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}

    async def fake_create_subprocess_exec(*command: str, **kwargs: object) -> _FakeInstallProcess:
        captured["command"] = command
        captured["cwd"] = kwargs["cwd"]
        return _FakeInstallProcess(1, b"npm ERR! 404 Not Found")

    monkeypatch.setattr(server_controller.shutil, "which", lambda name: None)
    monkeypatch.setattr(
        "appgen.core.server_controller.asyncio.create_subprocess_exec",
        fake_create_subprocess_exec,
    )

    with pytest.raises(DependencyInstallFailed, match="exit code 1: npm ERR! 404"):
        await NpmDevServerRunner().install(tmp_path, timeout=5)

    assert captured["command"] == ("npm", "install", "--no-audit", "--no-fund")
    assert captured["cwd"] == str(tmp_path)


@pytest.mark.asyncio
async def test_npm_install_missing_binary(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    async def fake_create_subprocess_exec(*command: str, **kwargs: object) -> _FakeInstallProcess:
        del command, kwargs
        raise FileNotFoundError("npm")

    monkeypatch.setattr(
        "appgen.core.server_controller.asyncio.create_subprocess_exec",
        fake_create_subprocess_exec,
    )

    with pytest.raises(DependencyInstallFailed, match="Could not run"):
        await NpmDevServerRunner().install(tmp_path, timeout=5)


def test_install_output_is_truncated() -> None:
    output = server_controller._truncate("x" * 5000)

    assert output.startswith("... [truncated] ")
    assert len(output) == len("... [truncated] ") + server_controller.MAX_INSTALL_OUTPUT


def test_log_file_name() -> None:
    assert DEV_SERVER_LOG == ".devserver.log"


@pytest.mark.asyncio
async def test_tcp_listening_against_real_socket() -> None:
    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        del reader
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await tcp_listening("127.0.0.1", port) is True
    finally:
        server.close()
        await server.wait_closed()

    assert await tcp_listening("127.0.0.1", port) is False


class _HangingInstallProcess:
    """Install whose output pipe never closes, as when npm children keep it open."""

    pid = 4321
    returncode = None

    def __init__(self) -> None:
        self.communicate_calls = 0

    async def communicate(self) -> tuple[bytes, None]:
        self.communicate_calls += 1
        await asyncio.Event().wait()
        return b"", None


def _patch_hanging_install(
    monkeypatch: pytest.MonkeyPatch,
) -> tuple[_HangingInstallProcess, dict[str, object], list[int]]:
    process = _HangingInstallProcess()
    spawn_kwargs: dict[str, object] = {}
    killed: list[int] = []

    async def fake_create_subprocess_exec(*command: str, **kwargs: object) -> _HangingInstallProcess:
        del command
        spawn_kwargs.update(kwargs)
        return process

    def fake_terminate_tree(root: object, timeout: float) -> bool:
        del timeout
        killed.append(root.pid)  # type: ignore[attr-defined]
        return True

    monkeypatch.setattr(
        "appgen.core.server_controller.asyncio.create_subprocess_exec",
        fake_create_subprocess_exec,
    )
    monkeypatch.setattr(
        "appgen.core.server_controller.psutil.Process",
        lambda pid: type("_Proc", (), {"pid": pid})(),
    )
    monkeypatch.setattr("appgen.core.server_controller.terminate_tree", fake_terminate_tree)
    return process, spawn_kwargs, killed


@pytest.mark.asyncio
async def test_npm_install_timeout_kills_tree_and_returns(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process, spawn_kwargs, killed = _patch_hanging_install(monkeypatch)
    runner = NpmDevServerRunner(terminate_timeout_seconds=0.05)

    started = time.monotonic()
    with pytest.raises(DependencyInstallFailed, match="timed out"):
        await runner.install(tmp_path, timeout=0.05)

    assert time.monotonic() - started < 2
    assert killed == [process.pid]
    assert process.communicate_calls == 2
    if sys.platform == "win32":
        assert "creationflags" in spawn_kwargs
    else:
        assert spawn_kwargs["start_new_session"] is True


@pytest.mark.asyncio
async def test_cancelled_npm_install_kills_tree(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process, _, killed = _patch_hanging_install(monkeypatch)
    runner = NpmDevServerRunner(terminate_timeout_seconds=0.05)

    task = asyncio.create_task(runner.install(tmp_path, timeout=60))
    while process.communicate_calls == 0:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert killed == [process.pid]


@pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None, reason="needs a POSIX shell")
@pytest.mark.asyncio
async def test_npm_install_timeout_with_background_child(tmp_path: Path) -> None:
    runner = NpmDevServerRunner(
        install_command="sh -c 'sleep 15 & wait'", terminate_timeout_seconds=2.0
    )

    started = time.monotonic()
    with pytest.raises(DependencyInstallFailed, match="timed out"):
        await runner.install(tmp_path, timeout=0.5)

    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_start_queued_behind_delete_sees_missing_workspace(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    await h.controller.start("demo", h.directory, 3001)
    await h.controller.stop("demo", 3001)

    async def remove_workspace() -> None:
        shutil.rmtree(h.directory)

    results = await asyncio.gather(
        h.controller.stop_and_forget("demo", 3001, remove_workspace),
        h.controller.start("demo", h.directory, 3001),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], ProjectNotFound)
    assert h.system.listening(3001) == []
    assert len(h.runner.spawns) == 1
    assert h.controller.state("demo") is ServerState.STOPPED
    assert h.controller.tracked_ids() == []
    assert h.registry.get("demo") is None


@pytest.mark.asyncio
async def test_start_and_restart_require_workspace(tmp_path: Path) -> None:
    h = _Harness(tmp_path)
    missing = tmp_path / "gone"

    with pytest.raises(ProjectNotFound):
        await h.controller.start("gone", missing, 3002)
    with pytest.raises(ProjectNotFound):
        await h.controller.restart("gone", missing, 3002)
    assert h.runner.spawns == []
    assert h.controller.state("gone") is ServerState.STOPPED
