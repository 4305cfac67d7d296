"""
FastAPI application entry point for the brewlog backend.
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from backend.config import get_settings
from backend.routes import router
from shared.errors import BrewlogError

logger = logging.getLogger(__name__)


async def _brewlog_error_handler(request: Request, exc: BrewlogError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="Brewlog Backend (FastAPI)", version="0.1.0")
    app.add_exception_handler(BrewlogError, _brewlog_error_handler)
    app.include_router(router, prefix=settings.api_prefix)

    # Local disk storage is served straight from the upload directory.
    if not settings.asset_bucket and not settings.use_in_memory_backends:
        os.makedirs(settings.upload_dir, exist_ok=True)
        app.mount(
            settings.upload_url_prefix,
            StaticFiles(directory=settings.upload_dir),
            name="uploads",
        )
    return app


app = create_app()
