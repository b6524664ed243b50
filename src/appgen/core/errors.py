"""Error taxonomy shared by the lifecycle components and the API."""

from __future__ import annotations


class AppGenError(Exception):
    """Base error with a machine-readable kind and an HTTP status."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(AppGenError):
    kind = "InvalidInput"
    status_code = 400


class ProjectNotFound(AppGenError):
    kind = "ProjectNotFound"
    status_code = 404

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class AlreadyExists(AppGenError):
    kind = "AlreadyExists"
    status_code = 409

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project already exists: {project_id}")
        self.project_id = project_id


class GenerationFailed(AppGenError):
    kind = "GenerationFailed"


class DependencyInstallFailed(AppGenError):
    kind = "DependencyInstallFailed"


class SpawnFailed(AppGenError):
    kind = "SpawnFailed"


class DeleteFailed(AppGenError):
    kind = "DeleteFailed"


class CorruptManifest(AppGenError):
    kind = "CorruptManifest"


class WorkspaceIOError(AppGenError):
    """Filesystem failure while touching a workspace."""

    kind = "IOError"
