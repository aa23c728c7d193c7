"""FastAPI application exposing the benefit booking engine."""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI

from .core.config import is_running_tests, settings
from .errors import register_error_handlers
from .middleware.prometheus_middleware import PrometheusMiddleware
from .routes import prometheus
from .routes.v1 import benefit_bookings as benefit_bookings_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "Benefit Booking API"
API_VERSION = "0.1.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment}")
    if is_running_tests():
        logger.info("Running under pytest (test mode active)")
    if not settings.redis_url:
        logger.info("REDIS_URL not set: credit consumption relies on database guards only")
    yield
    logger.info(f"{API_TITLE} shutting down...")


def create_app() -> FastAPI:
    application = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(application)
    application.add_middleware(PrometheusMiddleware)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(benefit_bookings_v1.router, prefix="/benefit-bookings")
    application.include_router(api_v1)
    application.include_router(prometheus.router)
    return application


app = create_app()
