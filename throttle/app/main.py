import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from throttle.app.api.admin import router as admin_router
from throttle.app.core.config import settings
from throttle.app.core.logging import get_logger, setup_logging
from throttle.app.middleware.rate_limit import (
    PolicyRegistry,
    RateLimitAdmin,
    RateLimiterEngine,
    RateLimitMiddleware,
    TieredStateStore,
    build_state_store,
)
from throttle.app.middleware.request_id import RequestIdMiddleware


def create_app(
    store: Optional[TieredStateStore] = None,
    registry: Optional[PolicyRegistry] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The state store is built once here and shared by the middleware and the
    admin API through app.state.

    Args:
        store: State store to use instead of the one built from settings
        registry: Policy registry to use instead of the built-in presets
        clock: Time source for the engine

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    store = store or build_state_store(clock=clock)
    registry = registry or PolicyRegistry()
    engine = RateLimiterEngine(store, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Closes the shared store connection on shutdown.
        """
        logger.info(
            "Application startup complete",
            extra={
                "redis_enabled": store.remote is not None,
                "policies": registry.names(),
                "rate_limit_enabled": settings.rate_limit_enabled,
            },
        )
        yield
        await store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Throttle Gateway",
        description="Request throttling with shared counters and local fallback",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.state_store = store
    app.state.policy_registry = registry
    app.state.rate_limit_engine = engine
    app.state.rate_limit_admin = RateLimitAdmin(engine)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware, engine=engine, registry=registry)

    # Request ID middleware (outermost so throttling logs carry the id)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(admin_router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors and hide their details unless debug is on.

        Tracebacks are never returned to the client.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with shared store status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        if store.remote is None:
            health_status["components"]["store"] = {"status": "ok", "type": "memory"}
            return health_status

        result = await store.remote.get("_health_check")
        if result.ok:
            health_status["components"]["store"] = {"status": "ok", "type": "redis"}
        else:
            # Throttling keeps working on the local fallback
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "type": "redis",
                "error": result.error.reason,
            }
        return health_status

    return app
