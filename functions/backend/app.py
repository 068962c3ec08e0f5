"""
FastAPI application entry point for the backup connector service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.config import get_settings
from backend.routes import router
from cove.errors import (
    ConnectorError,
    ConnectorNotConfiguredError,
    ConnectorRateLimitError,
    DeviceNotFoundError,
)

logger = logging.getLogger(__name__)


async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    headers = None
    if isinstance(exc, DeviceNotFoundError):
        status_code = 404
    elif isinstance(exc, ConnectorNotConfiguredError):
        status_code = 503
    elif isinstance(exc, ConnectorRateLimitError):
        status_code = 429
        if exc.retry_after_ms:
            headers = {"Retry-After": str(max(1, exc.retry_after_ms // 1000))}
    else:
        status_code = 502
        logger.error("Upstream failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)}, headers=headers)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Backup Connector (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(ConnectorError, connector_error_handler)
    return app


app = create_app()
