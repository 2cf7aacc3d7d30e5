from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from stampline_api.core.settings import settings
from stampline_api.db.session import engine
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Stampline API starting",
        environment=settings.environment,
        pass_sync_enabled=settings.pass_sync_enabled,
        token_grace_minutes=settings.loyalty_token_grace_minutes,
    )
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Stampline API stopped")


def create_app() -> FastAPI:
    """Application factory for the Stampline FastAPI service."""
    configure_logging(
        service_name="stampline-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        sql_echo=settings.database_echo,
    )

    app = FastAPI(
        title="Stampline API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="stampline-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
