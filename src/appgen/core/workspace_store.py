"""On-disk project workspaces: one directory per project."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import re
import shutil
import tempfile
import zipfile
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from appgen.core.errors import (
    AlreadyExists,
    AppGenError,
    CorruptManifest,
    DeleteFailed,
    InvalidInput,
    ProjectNotFound,
    WorkspaceIOError,
)
from appgen.models.project import Manifest

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"
BUILD_ARTIFACT_DIRS = frozenset({"node_modules", ".next", ".git", ".turbo"})
SOURCE_EXTENSIONS = frozenset(
    {".ts", ".tsx", ".js", ".jsx", ".mjs", ".css", ".json", ".md", ".html", ".txt"}
)
PROJECT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


@dataclass(slots=True)
class ProjectSummary:
    """One scanned workspace."""

    id: str
    directory: Path
    manifest: Manifest | None
    files: dict[str, str] = field(default_factory=dict)
    error: AppGenError | None = None


def parse_manifest(project_id: str, raw: str) -> Manifest:
    """Parse ``package.json`` text into a :class:`Manifest`."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"Manifest for {project_id} is not valid JSON: {exc}"
        raise CorruptManifest(msg) from exc
    if not isinstance(data, dict):
        msg = f"Manifest for {project_id} is not a JSON object"
        raise CorruptManifest(msg)

    name = data.get("name", project_id)
    if not isinstance(name, str) or not name:
        msg = f"Manifest for {project_id} has an invalid name"
        raise CorruptManifest(msg)

    config = data.get("config")
    port = config.get("port") if isinstance(config, dict) else None
    if isinstance(port, str) and port.strip().isdigit():
        port = int(port.strip())
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        msg = f"Manifest for {project_id} has no valid config.port"
        raise CorruptManifest(msg)
    return Manifest(name=name, port=port)


class WorkspaceStore:
    """CRUD over project directories and their file contents."""

    def __init__(
        self,
        root: Path,
        *,
        remove_attempts: int = 5,
        remove_backoff_seconds: float = 0.2,
    ) -> None:
        self._root = root.resolve()
        self._remove_attempts = max(1, remove_attempts)
        self._remove_backoff_seconds = remove_backoff_seconds

    @property
    def root(self) -> Path:
        return self._root

    def path_of(self, project_id: str) -> Path:
        if not PROJECT_ID_PATTERN.fullmatch(project_id) or ".." in project_id:
            msg = f"Invalid project id: {project_id!r}"
            raise InvalidInput(msg)
        return self._root / project_id

    def exists(self, project_id: str) -> bool:
        return self.path_of(project_id).is_dir()

    async def create(self, project_id: str) -> Path:
        directory = self.path_of(project_id)
        try:
            await asyncio.to_thread(self._make_exclusive_dir, directory)
        except FileExistsError as exc:
            raise AlreadyExists(project_id) from exc
        except OSError as exc:
            msg = f"Failed to create workspace {project_id}: {exc}"
            raise WorkspaceIOError(msg) from exc
        return directory

    async def write_files(self, project_id: str, files: Mapping[str, str]) -> None:
        directory = self._require(project_id)
        # Resolve every target first so a bad path rejects the whole batch.
        targets = [(self._resolve(directory, rel_path), content) for rel_path, content in files.items()]
        try:
            await asyncio.to_thread(self._write_all, targets)
        except OSError as exc:
            msg = f"Failed to write files for {project_id}: {exc}"
            raise WorkspaceIOError(msg) from exc

    async def write_file(self, project_id: str, rel_path: str, content: str) -> None:
        await self.write_files(project_id, {rel_path: content})

    async def read_manifest(self, project_id: str) -> Manifest:
        directory = self._require(project_id)
        manifest_path = directory / MANIFEST_NAME
        try:
            raw = await asyncio.to_thread(manifest_path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise ProjectNotFound(project_id) from exc
        except (OSError, UnicodeDecodeError) as exc:
            msg = f"Failed to read manifest for {project_id}: {exc}"
            raise CorruptManifest(msg) from exc
        return parse_manifest(project_id, raw)

    async def read_files(self, project_id: str) -> dict[str, str]:
        directory = self._require(project_id)
        try:
            return await asyncio.to_thread(self._collect_files, directory)
        except OSError as exc:
            msg = f"Failed to read files for {project_id}: {exc}"
            raise WorkspaceIOError(msg) from exc

    async def iter_projects(self) -> AsyncIterator[ProjectSummary]:
        """Yield one summary per workspace; each call starts a fresh scan."""
        directories = await asyncio.to_thread(self._project_dirs)
        for directory in directories:
            project_id = directory.name
            try:
                manifest = await self.read_manifest(project_id)
                files = await self.read_files(project_id)
            except (CorruptManifest, ProjectNotFound, WorkspaceIOError) as exc:
                yield ProjectSummary(id=project_id, directory=directory, manifest=None, error=exc)
                continue
            yield ProjectSummary(id=project_id, directory=directory, manifest=manifest, files=files)

    async def list(self) -> list[ProjectSummary]:
        return [summary async for summary in self.iter_projects()]

    async def remove(self, project_id: str) -> None:
        directory = self._require(project_id)
        last_error: OSError | None = None
        for attempt in range(1, self._remove_attempts + 1):
            try:
                await asyncio.to_thread(shutil.rmtree, directory)
                return
            except OSError as exc:
                if not directory.exists():
                    return
                last_error = exc
                logger.warning(
                    "Removing workspace %s failed (attempt %d/%d): %s",
                    project_id,
                    attempt,
                    self._remove_attempts,
                    exc,
                )
            if attempt < self._remove_attempts:
                await asyncio.sleep(self._remove_backoff_seconds * 2 ** (attempt - 1))
        msg = f"Failed to remove workspace {project_id}: {last_error}"
        raise DeleteFailed(msg) from last_error

    async def archive(self, project_id: str) -> bytes:
        directory = self._require(project_id)
        try:
            return await asyncio.to_thread(self._zip_directory, directory)
        except OSError as exc:
            msg = f"Failed to archive {project_id}: {exc}"
            raise WorkspaceIOError(msg) from exc

    def _require(self, project_id: str) -> Path:
        directory = self.path_of(project_id)
        if not directory.is_dir():
            raise ProjectNotFound(project_id)
        return directory

    def _project_dirs(self) -> list[Path]:
        if not self._root.is_dir():
            return []
        return sorted(
            path
            for path in self._root.iterdir()
            if path.is_dir() and PROJECT_ID_PATTERN.fullmatch(path.name)
        )

    @staticmethod
    def _make_exclusive_dir(directory: Path) -> None:
        directory.parent.mkdir(parents=True, exist_ok=True)
        directory.mkdir()

    @staticmethod
    def _resolve(directory: Path, rel_path: str) -> Path:
        cleaned = rel_path.replace("\\", "/").strip()
        root = directory.resolve()
        candidate = (root / cleaned).resolve()
        if not cleaned or root not in candidate.parents:
            msg = f"Path escapes project root: {rel_path}"
            raise InvalidInput(msg)
        return candidate

    @classmethod
    def _write_all(cls, targets: list[tuple[Path, str]]) -> None:
        for path, content in targets:
            cls._atomic_write(path, content)

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _walk_files(directory: Path) -> list[Path]:
        found: list[Path] = []
        for current, dirnames, filenames in os.walk(directory):
            dirnames[:] = sorted(name for name in dirnames if name not in BUILD_ARTIFACT_DIRS)
            found.extend(Path(current) / name for name in filenames)
        return sorted(found, key=lambda path: path.relative_to(directory).as_posix())

    @classmethod
    def _collect_files(cls, directory: Path) -> dict[str, str]:
        files: dict[str, str] = {}
        for path in cls._walk_files(directory):
            if path.suffix not in SOURCE_EXTENSIONS:
                continue
            rel_path = path.relative_to(directory).as_posix()
            files[rel_path] = path.read_text(encoding="utf-8", errors="replace")
        return files

    @classmethod
    def _zip_directory(cls, directory: Path) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in cls._walk_files(directory):
                archive.write(path, arcname=path.relative_to(directory).as_posix())
        return buffer.getvalue()
