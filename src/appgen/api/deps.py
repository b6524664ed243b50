"""Shared API dependency providers."""

from __future__ import annotations

from functools import lru_cache

from appgen.config import get_settings
from appgen.core.project_manager import ProjectManager


@lru_cache(maxsize=1)
def get_project_manager() -> ProjectManager:
    return ProjectManager.from_settings(get_settings())
