import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from sqlalchemy.exc import SQLAlchemyError

# Load env from the repository root .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from replyflow.core.config import settings, validate_config
from replyflow.core.errors import (
    AppError,
    app_error_handler,
    datastore_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from replyflow.core.logging import configure_logging
from replyflow.core.middleware.request_id import RequestIdMiddleware
from replyflow.core.validation import validate_env
from replyflow.api import billing, health, usage
from replyflow.features.billing.service import validate_billing_config
from replyflow.features.plans.service import seed_plans, validate_catalog

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("replyflow")
    logger.info("Starting replyflow entitlement service...")
    # Misconfigured plans or billing secrets must stop the boot
    validate_catalog()
    validate_billing_config()
    seed_plans()
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("replyflow").info("Stopping replyflow entitlement service...")


app = FastAPI(title="replyflow - Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(SQLAlchemyError, datastore_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(usage.router, prefix="/api")
app.include_router(billing.router, prefix="/api")
app.include_router(health.router)
