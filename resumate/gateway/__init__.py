from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from resumate.gateway.api.v1 import routers as v1_routers
from resumate.gateway.config import Settings, get_settings
from resumate.gateway.db import close_db, prepare_database
from resumate.gateway.exceptions import APIError
from resumate.gateway.logging_config import (
    RequestContextMiddleware,
    api_error_handler,
    configure_logging,
    unhandled_exception_handler,
)
from resumate.gateway.metrics import init_metrics_db, start_metrics_writer, stop_metrics_writer


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.dependency_overrides[get_settings]()
    assert isinstance(settings, Settings)

    configure_logging(Path(settings.log_dir), settings.log_level)
    await prepare_database(settings)
    if settings.metrics_db_path:
        init_metrics_db(settings.metrics_db_path)
        await start_metrics_writer()

    if settings.billing_enabled and not settings.stripe_secret_key:
        logger.warning("Billing enabled without STRIPE_SECRET_KEY; billing routes will answer 503")
    logger.bind(billing_enabled=settings.billing_enabled).info("Billing gateway started")

    try:
        yield
    finally:
        await stop_metrics_writer()
        await close_db()


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        settings = Settings()  # type: ignore

    app = FastAPI(
        title="Resumate Billing Gateway",
        version="0.1.0",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.dependency_overrides[get_settings] = lambda: settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it wraps CORS too and every log line carries the request id
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in v1_routers:
        app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "billing_enabled": settings.billing_enabled}

    return app
