"""
FastAPI Application Factory
===========================

Builds the disguise image proxy application.

Architecture:
    Client → disguise (this service) → untrusted upstream image host

Routers:
    - /<hex digest>/<hex url> : Signed image proxy (the only route)

No documentation or health routes are mounted: every path is owned by the
proxy route so that unknown shapes answer 404 uniformly.

Environment Variables:
    - CAMO_KEY: Shared secret used to sign URLs
    - DISGUISE_NETWORK / DISGUISE_ADDRESS: Listener (default tcp [::1]:8081)
    - DISGUISE_FORWARDED_HEADERS: Request headers passed upstream
    - DISGUISE_SHUTDOWN_TIMEOUT: Grace period after an interrupt (default 10s)
    - DISGUISE_UPSTREAM_TIMEOUT: Optional upstream fetch deadline
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    python -m disguise -a 127.0.0.1:8081 -s "$CAMO_KEY"
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import httpx

from .config import Settings, get_settings
from .proxy import proxy_router


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


class AppState:
    """
    Per-application state container.

    Holds the shared upstream HTTP client. owns_client is True when the
    lifespan created the client and is therefore responsible for closing it.
    """
    def __init__(self, upstream_client: Optional[httpx.AsyncClient] = None):
        self.upstream_client = upstream_client
        self.owns_client = False


def create_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the HTTP client used for upstream fetches.

    Redirects are followed. The timeout is DISGUISE_UPSTREAM_TIMEOUT, or no
    deadline at all when it is unset.
    """
    return httpx.AsyncClient(
        follow_redirects=True,
        max_redirects=settings.DISGUISE_MAX_REDIRECTS,
        timeout=httpx.Timeout(settings.DISGUISE_UPSTREAM_TIMEOUT),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: create the upstream client unless one was injected.
    Shutdown: close the client if this lifespan created it.
    """
    logger = logging.getLogger("disguise.main")
    settings: Settings = app.state.settings
    app_state: AppState = app.state.app_state

    if app_state.upstream_client is None:
        app_state.upstream_client = create_upstream_client(settings)
        app_state.owns_client = True
        logger.info("Created upstream HTTP client")

    logger.info(
        "Disguise application started",
        extra={
            "forwarded_headers": settings.forwarded_headers_list,
            "upstream_timeout": settings.DISGUISE_UPSTREAM_TIMEOUT,
        }
    )

    yield

    logger.info("Shutting down disguise application")

    if app_state.owns_client:
        await app_state.upstream_client.aclose()
        app_state.upstream_client = None
        app_state.owns_client = False
        logger.info("Closed upstream HTTP client")


def create_application(
    settings: Optional[Settings] = None,
    upstream_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Configuration to serve with (defaults to get_settings())
        upstream_client: Client for upstream fetches; created in the
            lifespan when omitted

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="disguise",
        description="Signed image proxy",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.app_state = AppState(upstream_client)

    app.include_router(proxy_router)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log an unhandled error and answer with a generic 500.

        The cause is never exposed to the client.
        """
        logger = logging.getLogger("disguise.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app
