"""
Tenant Webhooks - Main FastAPI Application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.routes import router as api_router
from app.core.config import Settings, settings as default_settings
from app.core.context import ServiceContext, create_context
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.db.database import init_models

# Setup logging before anything else
setup_logging(
    level="DEBUG" if default_settings.DEBUG else default_settings.LOG_LEVEL,
    json_format=not default_settings.DEBUG,
    app_name=default_settings.APP_NAME,
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Register, update, rotate and delete outbound webhooks; read their delivery log.",
    },
    {"name": "Jobs", "description": "State of the webhook delivery queue."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


def create_app(
    settings: Settings | None = None,
    context: ServiceContext | None = None,
) -> FastAPI:
    """
    Build the application.

    When ``context`` is given the caller owns it: it is used as-is and not
    closed on shutdown. Otherwise the lifespan builds one from ``settings``.
    """
    settings = settings or (context.settings if context else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_context = context is None
        ctx = context or create_context(settings)
        app.state.context = ctx
        logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
        await init_models(ctx.engine)
        logger.info("Database tables initialized")
        try:
            yield
        finally:
            logger.info("Shutting down application")
            if owns_context:
                await ctx.aclose()

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Outbound webhook delivery for tenants: subscriptions, signed "
            "deliveries with retries, and a per-webhook delivery log."
        ),
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    # Setup middleware (correlation ID, request logging)
    setup_middleware(app, debug=settings.DEBUG)
    setup_exception_handlers(app)

    allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
        )

    app.include_router(api_router, prefix="/api/v1")

    @app.get(
        "/health",
        summary="Liveness probe",
        description="The process is up. External dependencies are not checked.",
        tags=["Health"],
    )
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get(
        "/health/ready",
        summary="Readiness probe",
        description="Checks the database connection.",
        responses={503: {"description": "Database unavailable"}},
        tags=["Health"],
    )
    async def readiness_check():
        ctx: ServiceContext = app.state.context
        try:
            async with ctx.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Readiness check failed", extra_data={"error": str(e)})
            return JSONResponse(
                content={"status": "degraded", "db": f"error: {type(e).__name__}"},
                status_code=503,
            )
        return {"status": "healthy", "db": "ok"}

    return app


app = create_app()
