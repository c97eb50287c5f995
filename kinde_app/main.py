"""
FastAPI Application Factory
===========================

Main entry point of the Kinde login service.

Routers:
    - /login, /register, /callback, /logout : authentication flow
    - /, /dashboard, /profile, /api/user     : application pages
    - /health                                : health check

Environment Variables Required:
    - KINDE_DOMAIN: Kinde business domain (e.g., "https://yourbusiness.kinde.com")
    - KINDE_CLIENT_ID / KINDE_CLIENT_SECRET: Kinde application credentials
    - KINDE_REDIRECT_URI: Callback URL (e.g., "http://localhost:3000/callback")
    - KINDE_LOGOUT_REDIRECT_URI: Post-logout URL (e.g., "http://localhost:3000")
    - SESSION_SECRET: Secret for the session cookie
    - LOG_LEVEL: Logging level (default: INFO)

When any Kinde variable is missing the service starts in setup mode: every
path redirects to / which lists what still has to be configured.

Running the Service:
    Development:
        uvicorn kinde_app.main:app --reload --port 3000

    Production:
        uvicorn kinde_app.main:app --host 0.0.0.0 --port 3000 --workers 4
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from kinde_app.auth import LoginRequired, auth_router, login_required_handler
from kinde_app.auth.provider import KindeClient
from kinde_app.auth.session import build_session_store
from kinde_app.config import Settings, get_settings, validate_configuration
from kinde_app.pages import pages_router

SETUP_MODE_PATHS = ("/", "/health")


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

    Startup: logs the configuration report.
    Shutdown: closes the outbound HTTP client.
    """
    settings: Settings = app.state.settings
    logger = logging.getLogger("kinde_app.main")

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(warning)

    if report["valid"]:
        logger.info(
            "Kinde login service started",
            extra={
                "kinde_domain": settings.KINDE_DOMAIN,
                "redirect_uri": settings.KINDE_REDIRECT_URI,
                "session_backend": settings.SESSION_BACKEND,
            },
        )
    else:
        for error in report["errors"]:
            logger.error(error)
        logger.warning(
            f"Configuration incomplete - visit http://localhost:{settings.PORT} for setup instructions"
        )

    yield

    await app.state.kinde_client.http.aclose()
    logger.info("Kinde login service shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Shared read-only state (settings, session store, Kinde client)
        - Setup-mode redirect when configuration is incomplete
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings to use (defaults to the environment)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Kinde Login Service",
        description="OAuth2 authorization code + PKCE login against Kinde with cookie sessions",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = build_session_store(settings)
    app.state.kinde_client = KindeClient(
        settings,
        httpx.AsyncClient(timeout=settings.KINDE_HTTP_TIMEOUT_SECONDS),
    )

    if not settings.is_configured:
        @app.middleware("http")
        async def setup_mode_redirect(request: Request, call_next):
            if request.url.path not in SETUP_MODE_PATHS:
                return RedirectResponse(url="/", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
            return await call_next(request)

    app.include_router(auth_router)
    app.include_router(pages_router)

    app.add_exception_handler(LoginRequired, login_required_handler)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response without
        internal detail.
        """
        logger = logging.getLogger("kinde_app.main")
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
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "kinde_app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
