import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory's .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

# Import after dotenv is loaded
from directory_api.core.config import settings, validate_config, cors_origins
from directory_api.core.logging import configure_logging
from directory_api.core.middleware.request_id import RequestIdMiddleware
from directory_api.core.validation import validate_env
from directory_api.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from directory_api.core.database import create_all_tables
from directory_api.features.plans.service import seed_default_plans
from directory_api.api import admin, health, mpesa, profile, providers, subscriptions

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("directory")
    logger.info("Starting directory backend...")
    create_all_tables()
    if settings.SEED_DEFAULT_PLANS:
        seed_default_plans()
    try:
        yield
    finally:
        logger.info("Stopping directory backend...")


app = FastAPI(title="Directory - Backend", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(subscriptions.router)
app.include_router(mpesa.router)
app.include_router(providers.router)
app.include_router(profile.router)
app.include_router(admin.router)
