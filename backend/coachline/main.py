# backend/coachline/main.py
"""
Coachline API application.

Run locally with ``uvicorn coachline.main:app --reload`` from ``backend/``.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.routing import APIRoute

from . import __version__
from .core.config import settings
from .database import init_db
from .errors import register_error_handlers
from .routes import availability, bookings, health, payouts, risk, stripe_webhooks

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "Coachline API"
API_DESCRIPTION = "Booking lifecycle, refunds and coach payouts for the Coachline marketplace."


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment}")
    if settings.environment != "production" and settings.database_url.startswith("sqlite"):
        init_db()
    yield
    logger.info(f"{API_TITLE} shutting down...")


def _unique_operation_id(route: APIRoute) -> str:
    methods = "_".join(sorted(m.lower() for m in route.methods or []))
    path = route.path_format.replace("/", "_").replace("{", "").replace("}", "").strip("_")
    name = (route.name or "operation").lower().replace(" ", "_")
    return f"{methods}__{path}__{name}".strip("_")


def create_app() -> FastAPI:
    application = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
        generate_unique_id_function=_unique_operation_id,
    )
    register_error_handlers(application)

    application.include_router(health.router)
    application.include_router(bookings.router)
    application.include_router(availability.router)
    application.include_router(payouts.router)
    application.include_router(risk.router)
    application.include_router(stripe_webhooks.router)
    return application


app = create_app()
