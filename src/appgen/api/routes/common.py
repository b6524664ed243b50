"""Common route helpers."""

from __future__ import annotations

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from appgen.core.errors import AppGenError


async def appgen_error_handler(request: Request, exc: AppGenError) -> JSONResponse:
    """Render lifecycle errors as ``{"detail", "kind"}`` with their status."""
    del request
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    del request
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "kind": "InvalidInput"},
    )
