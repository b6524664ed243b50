"""Handles for OS processes whose lifetime belongs to the OS, not to us."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """Opaque capability to observe and terminate a spawned process."""

    pid: int

    def is_running(self) -> bool:
        """Return True while the process is alive."""

    def terminate(self, timeout: float) -> bool:
        """Terminate the process tree; False when it was already gone."""


def terminate_tree(process: psutil.Process, timeout: float) -> bool:
    """Terminate ``process`` and its descendants, escalating to kill."""
    try:
        children = process.children(recursive=True)
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        children = []

    targets = [*children, process]
    for target in targets:
        with contextlib.suppress(psutil.NoSuchProcess):
            target.terminate()
    _, alive = psutil.wait_procs(targets, timeout=timeout)
    if alive:
        logger.warning("Killing pid(s) %s after %.1fs", [proc.pid for proc in alive], timeout)
        for target in alive:
            with contextlib.suppress(psutil.NoSuchProcess):
                target.kill()
        psutil.wait_procs(alive, timeout=timeout)
    return True


@dataclass(frozen=True, slots=True)
class OSProcessHandle:
    """psutil-backed handle; the create time guards against pid reuse."""

    pid: int
    create_time: float | None = None

    @classmethod
    def from_pid(cls, pid: int) -> OSProcessHandle:
        try:
            create_time = psutil.Process(pid).create_time()
        except psutil.Error:
            create_time = None
        return cls(pid=pid, create_time=create_time)

    def is_running(self) -> bool:
        process = self._process()
        if process is None:
            return False
        try:
            return process.status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def terminate(self, timeout: float) -> bool:
        process = self._process()
        if process is None:
            return False
        return terminate_tree(process, timeout)

    def _process(self) -> psutil.Process | None:
        try:
            process = psutil.Process(self.pid)
            if self.create_time is not None and process.create_time() != self.create_time:
                return None
        except psutil.NoSuchProcess:
            return None
        return process
