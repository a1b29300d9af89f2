"""ServiceHub booking and payments API application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from servicehub.core.config import settings
from servicehub.core.database import engine
from servicehub.core.errors import register_error_handlers
from servicehub.routes import bookings, payments
from servicehub.services.gateway import RazorpayGateway

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        base_url=settings.gateway_base_url,
        currency=settings.gateway_currency,
        timeout=settings.gateway_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    app.state.gateway = build_gateway()
    logger.info("%s started (gateway configured: %s)", settings.app_name, app.state.gateway.is_available())
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    docs_url=f"{settings.api_prefix}/docs",
    openapi_url=f"{settings.api_prefix}/openapi.json",
    lifespan=lifespan,
)

# CORS - permissive in dev, lock down in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Mount routes
app.include_router(bookings.router, prefix=settings.api_prefix)
app.include_router(payments.router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
