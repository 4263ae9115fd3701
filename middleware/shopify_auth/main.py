"""
FastAPI Application Factory
===========================

Wires the authentication middleware into a FastAPI application for an
embedded app running inside the Shopify Admin.

Architecture:
    Shopify Admin (iframe / App Bridge) -> ShopifyAuthMiddleware -> VerifyRequestMiddleware -> app routes

Routes:
    - /auth, /auth/toplevel, /auth/inline, /auth/callback : interactive authorization
    - /api/shop : sample route behind verification
    - /health   : health check (not verified)

Environment Variables Required:
    - SHOPIFY_API_KEY: App API key
    - SHOPIFY_API_SECRET: App API secret key
    - SHOPIFY_SCOPES: Comma-separated access scopes
    - SHOPIFY_HOST_NAME: Public host name of the app
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn shopify_auth.main:create_application --factory --reload --port 8080
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth.routes import AfterAuth, ShopifyAuthMiddleware
from .auth.storage import SessionStorage
from .config import Settings, get_settings
from .context import ShopifyAuthContext
from .verify.middleware import AfterSessionRefresh, VerifyRequestMiddleware


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def install_shopify_auth(
    app: FastAPI,
    context: ShopifyAuthContext,
    after_auth: Optional[AfterAuth] = None,
    after_session_refresh: Optional[AfterSessionRefresh] = None,
) -> None:
    """
    Add both middlewares to an app.

    Starlette runs the last added middleware first, so verification is added
    before the auth flow: the auth routes are served without verification and
    every other request is verified.
    """
    settings = context.settings

    app.add_middleware(
        VerifyRequestMiddleware,
        context=context,
        access_mode=settings.ACCESS_MODE,
        return_header=settings.RETURN_HEADER,
        auth_route=settings.AUTH_PATH,
        after_session_refresh=after_session_refresh,
    )
    app.add_middleware(
        ShopifyAuthMiddleware,
        context=context,
        access_mode=settings.ACCESS_MODE,
        auth_path=settings.AUTH_PATH,
        after_auth=after_auth,
    )


def create_application(
    settings: Optional[Settings] = None,
    storage: Optional[SessionStorage] = None,
    after_auth: Optional[AfterAuth] = None,
    after_session_refresh: Optional[AfterSessionRefresh] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management (closes the identity provider HTTP client)
        - Authorization flow and verification middlewares
        - Route handlers
        - Exception handlers

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    context = ShopifyAuthContext(settings, storage=storage, http_client=http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("shopify_auth.main")
        logger.info(
            "Starting embedded app service",
            extra={
                "host_name": settings.SHOPIFY_HOST_NAME,
                "access_mode": settings.ACCESS_MODE,
                "embedded": settings.IS_EMBEDDED_APP,
            }
        )

        yield

        logger.info("Shutting down embedded app service")
        await context.aclose()

    app = FastAPI(
        title="Embedded App Service",
        description="Session verification and token exchange for embedded Shopify apps",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.shopify_auth = context

    install_shopify_auth(
        app,
        context,
        after_auth=after_auth,
        after_session_refresh=after_session_refresh,
    )

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "embedded-app",
            "version": "1.0.0"
        }

    @app.get("/api/shop", tags=["Shop"])
    async def current_shop(request: Request) -> Dict[str, Any]:
        """Return the shop of the verified session."""
        session = request.state.shopify
        return {
            "shop": session.shop,
            "online": session.is_online,
            "scope": session.scope,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("shopify_auth.main")
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
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    uvicorn.run(
        "shopify_auth.main:create_application",
        factory=True,
        host=settings.MIDDLEWARE_HOST,
        port=settings.MIDDLEWARE_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
