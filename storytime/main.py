import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from the working directory's .env (not under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from storytime.core.config import Settings, settings, validate_config
from storytime.core.database import create_all_tables, create_db_engine
from storytime.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from storytime.core.logging import configure_logging
from storytime.core.middleware.request_id import RequestIdMiddleware
from storytime.core.validation import validate_env
from storytime.api import billing, health, usage
from storytime.features.billing.plans import PlanCatalog
from storytime.features.billing.provider import BillingProvider
from storytime.features.billing.service import build_billing_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("storytime")
    logger.info("Starting StoryTime backend...")
    create_all_tables(app.state.engine)
    try:
        yield
    finally:
        logger.info("Stopping StoryTime backend...")
        app.state.engine.dispose()


def create_app(
    settings_obj: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    provider: Optional[BillingProvider] = None,
    catalog: Optional[PlanCatalog] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Clients are constructed here once and shared through app.state; tests
    pass their own engine, provider and catalog.
    """
    cfg = settings_obj or settings
    db_engine = engine or create_db_engine(cfg.DATABASE_URL)

    app = FastAPI(title="StoryTime - Backend", lifespan=lifespan)
    app.state.settings = cfg
    app.state.engine = db_engine
    app.state.billing = build_billing_services(cfg, db_engine, provider=provider, catalog=catalog)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "stripe-signature"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(health.router, tags=["health"])

    return app


configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()
