import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from polaris/.env
polaris_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(polaris_dir, ".env"))

# Import after dotenv is loaded
from polaris.core.config import settings, validate_config  # noqa: E402
from polaris.core.database import check_connection  # noqa: E402
from polaris.core.logging import configure_logging  # noqa: E402
from polaris.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from polaris.core.middleware.ratelimit import RateLimitMiddleware  # noqa: E402
from polaris.core.ratelimit import build_rate_limit_config_from_env  # noqa: E402
from polaris.core.validation import validate_env  # noqa: E402
from polaris.features.subscriptions.service import close_provider  # noqa: E402
from polaris.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from polaris.api import health, subscriptions, webhooks  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("polaris")
    logger.info("Starting Polaris billing service...")
    app.state.startup_time = time.time()
    if not check_connection():
        logger.warning("Database not reachable at startup")
    try:
        yield
    finally:
        logging.getLogger("polaris").info("Stopping Polaris billing service...")
        close_provider()


app = FastAPI(title="Polaris - Billing", lifespan=lifespan)

# Middlewares (last added runs first)
app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config_from_env(os.environ))
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.BASE_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions.router)
app.include_router(webhooks.router)
app.include_router(health.router)
app.include_router(health.root_router)
