import logging

from fastapi import FastAPI

from app.core.settings import settings
from app.services.container import build_default_services

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        services = getattr(app.state, "services", None)
        if services is None:
            services = build_default_services()
            app.state.services = services
        if settings.signing_worker_enabled and services.worker is not None:
            services.worker.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        services = getattr(app.state, "services", None)
        if services is not None:
            await services.aclose()
