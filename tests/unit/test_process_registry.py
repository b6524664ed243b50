import os
from pathlib import Path

import pytest

from appgen.core.port_allocator import PortAllocator
from appgen.core.process_registry import ProcessRegistry
from appgen.core.processes import OSProcessHandle
from appgen.core.workspace_store import WorkspaceStore
from tests.support.lifecycle_fakes import FakeHandle, FakeKiller, FakeSystem


def _registry(tmp_path: Path, system: FakeSystem) -> tuple[ProcessRegistry, FakeKiller]:
    killer = FakeKiller(system)
    ports = PortAllocator(
        WorkspaceStore(tmp_path / "projects"), killer=killer, kill_backoff_seconds=0
    )
    return ProcessRegistry(ports, terminate_timeout_seconds=0.1), killer


def test_record_overwrites_and_forget(tmp_path: Path) -> None:
    system = FakeSystem()
    registry, _ = _registry(tmp_path, system)
    first = FakeHandle(system, 1)
    second = FakeHandle(system, 2)

    registry.record("demo", first)
    registry.record("demo", second)

    assert registry.get("demo") is second
    assert registry.ids() == ["demo"]
    assert registry.forget("demo") is second
    assert registry.get("demo") is None
    assert registry.forget("demo") is None


@pytest.mark.asyncio
async def test_terminate_recorded_handle(tmp_path: Path) -> None:
    system = FakeSystem()
    registry, killer = _registry(tmp_path, system)
    handle = FakeHandle(system, 7)
    system.bind(3001, 7)
    registry.record("demo", handle)

    assert await registry.terminate("demo", 3001) is True
    assert handle.terminate_calls == 1
    assert system.listening(3001) == []
    assert registry.get("demo") is None
    assert killer.calls == []


@pytest.mark.asyncio
async def test_terminate_is_idempotent(tmp_path: Path) -> None:
    system = FakeSystem()
    registry, _ = _registry(tmp_path, system)
    registry.record("demo", FakeHandle(system, 7))

    assert await registry.terminate("demo") is True
    assert await registry.terminate("demo") is False


@pytest.mark.asyncio
async def test_terminate_already_exited_handle(tmp_path: Path) -> None:
    system = FakeSystem()
    registry, _ = _registry(tmp_path, system)
    registry.record("demo", FakeHandle(system, 7, alive=False))

    assert await registry.terminate("demo") is False


@pytest.mark.asyncio
async def test_terminate_falls_back_to_port(tmp_path: Path) -> None:
    system = FakeSystem()
    system.bind(3005, 99)
    registry, killer = _registry(tmp_path, system)

    assert await registry.terminate("orphan", 3005) is True
    assert killer.calls[0] == 3005
    assert system.listening(3005) == []


@pytest.mark.asyncio
async def test_terminate_swallows_handle_errors(tmp_path: Path) -> None:
    system = FakeSystem()
    registry, _ = _registry(tmp_path, system)

    class _Broken(FakeHandle):
        def terminate(self, timeout: float) -> bool:
            del timeout
            raise PermissionError("denied")

    registry.record("demo", _Broken(system, 8))

    assert await registry.terminate("demo") is False
    assert registry.get("demo") is None


def test_os_process_handle_guards_against_pid_reuse() -> None:
    handle = OSProcessHandle.from_pid(os.getpid())
    assert handle.create_time is not None
    assert handle.is_running() is True

    reused = OSProcessHandle(pid=os.getpid(), create_time=handle.create_time - 1000)
    assert reused.is_running() is False
    assert reused.terminate(0.1) is False
