"""FastAPI application entry point.

Start with:
    uvicorn datatrans_gateway.main:app --reload

The app is assembled by ``create_app`` with:
- Lifespan event for logging configuration
- CORS middleware configured
- Health router at the root
- Webhook sub-application at /api/webhooks, wrapped in the signature check
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datatrans_gateway.api.health import router as health_router
from datatrans_gateway.api.webhooks import router as webhook_router
from datatrans_gateway.config import Settings, get_settings
from datatrans_gateway.core.client import DatatransClient
from datatrans_gateway.middleware.webhook import ValidateWebhookMiddleware, WebhookOption

assert sys.version_info >= (3, 11), "datatrans-gateway requires Python 3.11+"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_webhook_app(settings: Settings) -> ValidateWebhookMiddleware:
    """Build the webhook receiver behind the signature check.

    Raises:
        ConfigurationError: If the Sign2 HMAC key is not valid hex.
    """
    webhook_api = FastAPI(title="Datatrans webhooks", docs_url=None, redoc_url=None)
    webhook_api.include_router(webhook_router)
    return ValidateWebhookMiddleware(
        webhook_api,
        WebhookOption(sign2_hmac_key=settings.datatrans_sign2_hmac_key),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Assemble the application.  A bad webhook key aborts here, before serving."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        logger.info("datatrans-gateway starting up")
        yield
        logger.info("datatrans-gateway shutting down")

    app = FastAPI(
        title="datatrans-gateway",
        description="Datatrans payment API client and verified webhook receiver",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS: permissive for development; restrict in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "GET"],
        allow_headers=["*"],
    )

    app.include_router(health_router)

    if settings.webhook_enabled:
        app.mount("/api/webhooks", create_webhook_app(settings))
    else:
        # Unmounted means 404: nothing unverified ever reaches the handler.
        logger.warning("DATATRANS_SIGN2_HMAC_KEY is empty, webhook endpoint disabled")

    app.state.datatrans = DatatransClient(
        settings.merchant_option(),
        timeout=settings.http_timeout_seconds,
    )
    return app


app = create_app()
