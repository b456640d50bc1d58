"""ASGI entry point for the experiments service."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from uplift import __version__
from uplift.api import health
from uplift.api.v1 import router as v1_router
from uplift.api.v1.dependencies import get_offer_applier
from uplift.core.config import Settings, get_settings
from uplift.core.database import close_database, init_database
from uplift.core.exceptions import setup_exception_handlers
from uplift.core.logging import setup_logging, setup_request_logging
from uplift.services.offer_applier import WebhookOfferApplier

logger = logging.getLogger("uplift")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:  # noqa: ARG001
    """Open the store on startup; close it and the offer webhook client on shutdown."""
    settings = get_settings()
    init_database(settings)
    applier = get_offer_applier()
    logger.info(
        "Experiments service started",
        extra={"env": settings.app_env, "offer_applier": type(applier).__name__},
    )
    try:
        yield
    finally:
        logger.info("Experiments service shutting down")
        if isinstance(applier, WebhookOfferApplier):
            await applier.close()
        await close_database()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the app: storefront and admin APIs plus health endpoints."""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Cart Uplift Experiments API",
        description="A/B testing of checkout offers: bucketing, tracking, results and rollout",
        version=__version__,
        lifespan=lifespan,
    )

    # Added first so CORS wraps it; preflight responses are not logged
    setup_request_logging(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(v1_router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "uplift.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    run()
