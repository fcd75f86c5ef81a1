import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from teammove/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from teammove.core.config import settings, validate_config
from teammove.core.logging import configure_logging
from teammove.core.middleware.request_id import RequestIdMiddleware
from teammove.core.middleware.metrics import MetricsMiddleware
from teammove.core.validation import validate_env
from teammove.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from teammove.core.database import create_all_tables
from teammove.api import admin_billing, billing, health, metrics
from teammove.features.plans.catalog import get_plan_catalog

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("teammove")
    logger.info("Starting TeamMove billing service...")
    app.state.startup_time = time.time()
    # Fail at startup rather than on the first request if the catalog is broken
    catalog = get_plan_catalog()
    logger.info("[plans] catalog ready", extra={"plans": len(catalog)})
    if settings.ENV.lower() != "production":
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping TeamMove billing service...")


app = FastAPI(title="TeamMove - Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(admin_billing.router, tags=["admin-billing"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("teammove.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
