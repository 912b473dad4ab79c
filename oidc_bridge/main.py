"""
FastAPI Application Factory
===========================

Entry point for the OIDC bridge service, which lets an application delegate
login to an external OpenID Connect provider and receive its own session
token in return.

Routers:
    - /api/oidc/*   : OIDC configuration, authorization and callback
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn --factory oidc_bridge.main:create_app --reload --host 0.0.0.0 --port 8080

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn --factory oidc_bridge.main:create_app --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import OidcService, oidc_router
from .auth.cache import ClientCache
from .auth.flow import AuthorizationFlow
from .auth.reconciler import CallbackReconciler
from .auth.session import JwtSessionMinter, SessionMinter
from .config import Settings, get_settings
from .errors import OidcError
from .models import ErrorResponse
from .storage import (
    ConfigStore,
    IdentityRepository,
    InMemoryConfigStore,
    InMemoryIdentityRepository,
)

SERVICE_VERSION = "1.0.0"


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
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup configures logging; shutdown drops the cached provider client.
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("oidc_bridge.main")

    logger.info(
        "OIDC bridge started",
        extra={"service": "oidc-bridge", "version": SERVICE_VERSION},
    )

    yield

    app.state.oidc.client_cache.invalidate()
    logger.info("OIDC bridge shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    config_store: Optional[ConfigStore] = None,
    repository: Optional[IdentityRepository] = None,
    session_minter: Optional[SessionMinter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Collaborators default to the in-memory stores and the JWT session
    minter; pass your own to back the service with real persistence.

    Args:
        settings: Settings to use instead of the environment
        config_store: Where the OIDC configuration is kept
        repository: Where users and auth records are kept
        session_minter: Issues application session tokens
        transport: httpx transport for calls to the identity provider

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    config_store = config_store or InMemoryConfigStore()
    repository = repository or InMemoryIdentityRepository()
    session_minter = session_minter or JwtSessionMinter(settings)

    client_cache = ClientCache(
        config_store,
        timeout=settings.OIDC_HTTP_TIMEOUT_SECONDS,
        transport=transport,
    )

    app = FastAPI(
        title="OIDC Bridge",
        description="OpenID Connect login delegation with local user reconciliation",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_minter = session_minter
    app.state.repository = repository
    app.state.oidc = OidcService(
        config_store=config_store,
        client_cache=client_cache,
        flow=AuthorizationFlow(client_cache),
        reconciler=CallbackReconciler(client_cache, repository, session_minter),
    )

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(oidc_router, prefix="/api")

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "oidc-bridge",
            "version": SERVICE_VERSION,
        }

    @app.exception_handler(OidcError)
    async def oidc_exception_handler(request: Request, exc: OidcError) -> JSONResponse:
        """Render OIDC errors with their own status code and message."""
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.error_code, message=exc.message).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("oidc_bridge.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
            },
        )

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "oidc_bridge.main:create_app",
        factory=True,
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
