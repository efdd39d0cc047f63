from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from asogate.app.api.tools import router as tools_router
from asogate.app.core.cache import get_cache, reset_cache
from asogate.app.core.config import settings
from asogate.app.core.http_client import init_http_client
from asogate.app.core.logging import get_logger, setup_logging
from asogate.app.exceptions import AsoGatewayError
from asogate.app.providers.connect import load_credentials
from asogate.app.providers.health import get_health_tracker
from asogate.app.services.scoring import reset_scoring_resolver
from asogate.app.services.tools import TOOL_REGISTRY, reset_tool_service


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[dict, None]:
        """Application lifespan context manager.

        Opens the shared HTTP client and the cache on startup and releases
        both on shutdown.
        """
        async with init_http_client() as http_client:
            cache = get_cache()
            stats = await cache.stats()
            logger.info(
                "Application startup complete",
                extra={
                    "cache_entries": stats.total_entries,
                    "tools": len(TOOL_REGISTRY),
                    "debug_mode": settings.debug,
                },
            )

            yield {"http_client": http_client}

            # Providers hold the shared client, which closes with this block
            reset_tool_service()
            reset_scoring_resolver()

        await get_cache().close()
        reset_cache()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ASO Gateway",
        description="App Store keyword research and listing metadata tools behind rate limits and a local cache",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(tools_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with cache, scoring provider and Connect status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            cache = get_cache()
            test_key = "_health_check_test"
            await cache.set(test_key, "ping", ttl=5)
            value = await cache.get(test_key)
            await cache.delete(test_key)
            if value == "ping":
                stats = await cache.stats()
                health_status["components"]["cache"] = {"status": "ok", **stats.to_dict()}
            else:
                health_status["status"] = "degraded"
                health_status["components"]["cache"] = {"status": "error", "error": "Unexpected value"}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["cache"] = {"status": "error", "error": str(e)[:100]}

        provider_status = get_health_tracker().get_all_status()
        health_status["components"]["providers"] = {
            "status": "ok" if all(provider_status.values()) else "fallback",
            "details": provider_status,
        }
        health_status["components"]["connect"] = {
            "configured": load_credentials() is not None,
        }
        return health_status

    @app.exception_handler(AsoGatewayError)
    async def gateway_error_handler(request: Request, exc: AsoGatewayError) -> JSONResponse:
        """Map gateway errors raised outside tool handlers to JSON responses."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Never return a traceback; log it server-side."""
        logger.exception(
            "Unhandled exception",
            extra={"exception_type": type(exc).__name__},
        )
        message = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": message},
        )

    return app


# Create the application instance
app = create_app()
