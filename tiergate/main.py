import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the working directory before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from tiergate.api import access, health, identity, metrics, prompts, tiers, usage
from tiergate.core.config import settings, validate_config
from tiergate.core.container import ServiceContainer, build_container
from tiergate.core.database import dispose_engine
from tiergate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from tiergate.core.logging import configure_logging
from tiergate.core.middleware.metrics import MetricsMiddleware
from tiergate.core.middleware.request_id import RequestIdMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("tiergate")
    logger.info("Starting tiergate...")
    try:
        yield
    finally:
        if app.state.container.storage == "sql":
            dispose_engine()
        logger.info("Stopping tiergate...")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the API around a service container.

    Catalogs are validated here, so a misconfigured deployment fails at
    startup rather than on the first request.
    """
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="tiergate - entitlement and feature gating", lifespan=lifespan)
    app.state.container = container or build_container(settings)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(access.router)
    app.include_router(usage.router)
    app.include_router(tiers.router)
    app.include_router(prompts.router)
    app.include_router(identity.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
