"""FastAPI application entrypoint for the Catalog service.

Wires the REST API, the browser form endpoints, CORS, CSRF, request
logging and health checks.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalog import __version__
from catalog.api import auth, forms, resources
from catalog.core.config import settings
from catalog.core.csrf import CSRFMiddleware
from catalog.core.exceptions import register_exception_handlers
from catalog.core.logging import get_logger, setup_logging
from catalog.core.middleware import add_process_time_header, log_requests
from catalog.infrastructure.database import check_connection, create_all
from catalog.infrastructure.redis import get_redis_client

logger = get_logger(__name__)

APP_NAME = "Catalog API"


def create_app() -> FastAPI:
    """Build the application.

    Middleware, outermost first: CORS, request logging, CSRF, timing header.
    CORS answers preflight requests before any other check runs.
    """
    app = FastAPI(
        title=APP_NAME,
        description="Products, customers and a small library behind JWT authentication",
        version=__version__,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    register_exception_handlers(app)

    # Added innermost first.
    app.middleware("http")(add_process_time_header)
    app.add_middleware(CSRFMiddleware)
    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.on_event("startup")
    async def startup_event():
        logger.info("Application starting up", extra={"operation": "startup"})
        if settings.environment != "production":
            create_all()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Application shutting down", extra={"operation": "shutdown"})

    app.include_router(auth.router)
    app.include_router(resources.router)
    app.include_router(forms.router)

    @app.get("/")
    def root():
        """Root endpoint with basic service info."""
        return {
            "service": APP_NAME,
            "version": __version__,
            "status": "running",
            "environment": settings.environment,
        }

    @app.get("/health")
    def health_check():
        """Liveness probe; 200 whenever the process can answer."""
        return {"status": "healthy", "version": __version__, "checks": {"api": "ok"}}

    @app.get("/ready")
    def readiness_check():
        """Readiness probe: the database must answer; Redis may fall back to memory."""
        checks = {"database": "ok" if check_connection() else "error"}

        if settings.redis_enabled and get_redis_client() is not None:
            checks["redis"] = "ok"
        else:
            checks["redis"] = "fallback_memory"

        return {
            "status": "ready" if checks["database"] == "ok" else "degraded",
            "checks": checks,
        }

    return app


setup_logging(level=settings.log_level, json_format=settings.environment == "production")

app = create_app()
