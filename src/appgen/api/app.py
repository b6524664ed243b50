"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from appgen.api.deps import get_project_manager
from appgen.api.routes.code import router as code_router
from appgen.api.routes.common import appgen_error_handler, validation_error_handler
from appgen.api.routes.events import router as events_router
from appgen.api.routes.projects import router as projects_router
from appgen.api.routes.runtime import router as runtime_router
from appgen.config import get_settings
from appgen.core.errors import AppGenError
from appgen.core.logging_config import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    provider = app.dependency_overrides.get(get_project_manager, get_project_manager)
    await provider().bootstrap()
    yield


def create_app() -> FastAPI:
    configure_logging(get_settings().log_level)

    app = FastAPI(title="appgen API", version="0.1.0", lifespan=lifespan)
    app.include_router(projects_router)
    app.include_router(runtime_router)
    app.include_router(code_router)
    app.include_router(events_router)
    app.add_exception_handler(AppGenError, appgen_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("appgen.api.app:app", host=settings.api_host, port=settings.api_port, reload=False)
