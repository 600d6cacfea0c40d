"""
FastAPI application entrypoint for the OAuth proxy.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from oauth_proxy.api.routes import account_router, router
from oauth_proxy.core.config import get_settings
from oauth_proxy.core.errors import ProxyError, UnauthorizedError
from oauth_proxy.core.logging import configure_logging
from oauth_proxy.dependencies import get_refresh_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the background refresh scheduler for the lifetime of the app."""
    settings = get_settings()
    scheduler = get_refresh_scheduler() if settings.refresh.enabled else None
    if scheduler is not None:
        scheduler.start()
    else:
        logger.info("Background token refresh disabled")
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


async def handle_proxy_error(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc, exc.code)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc, exc.code)
    headers = None
    if isinstance(exc, UnauthorizedError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=int(exc.status_code), content=exc.to_response(), headers=headers
    )


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="OAuth Proxy",
        version="0.1.0",
        description="OAuth 2.0 bridge issuing proxy tokens backed by Google credentials.",
        lifespan=lifespan,
    )
    app.add_exception_handler(ProxyError, handle_proxy_error)
    app.include_router(router)
    app.include_router(account_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
