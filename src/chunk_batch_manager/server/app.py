# -*- coding: utf-8 -*-

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..core.batching.manager import BatchJobManager
from ..core.errors import BatchError, summarize_error
from ..core.utils.config import BatchSettings
from . import api


async def batch_error_handler(request: Request, exc: BatchError) -> JSONResponse:
    if exc.http_status >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.http_status, content={"error": str(exc)})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in error['loc'] if p != 'body')}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(status_code=400, content={"error": summarize_error(problems or "Invalid request")})


def create_app(manager: Optional[BatchJobManager] = None,
               settings: Optional[BatchSettings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        manager (BatchJobManager, optional): Manager serving every request.
            Built lazily from ``settings`` when not given.
        settings (BatchSettings, optional): Settings for the lazily built manager.
    """
    app = FastAPI(
        title="Chunk Batch Manager",
        description="Batch processing of text chunks through poll-only batch APIs",
        version=__version__,
    )
    app.state.manager = manager
    app.state.settings = settings

    app.add_exception_handler(BatchError, batch_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(api.router)
    return app
