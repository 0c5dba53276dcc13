from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.db import create_tables
from cohort_scheduler.db.session import engine
from cohort_scheduler.middlewares import RequestIDMiddleware
from cohort_scheduler.routers import main_router, webhook_router
from cohort_scheduler.services.delivery_provider import close_delivery_provider
from cohort_scheduler.utils.errors import setup_error_handlers
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        f"{settings.NAME} v{settings.VERSION} starting ({settings.ENVIRONMENT}) "
        f"on {engine.url.render_as_string()}"
    )
    if engine.dialect.name == "sqlite" and settings.ENVIRONMENT == "development":
        create_tables(engine)
    if not settings.DELIVERY_WEBHOOK_SECRET:
        logger.warning("DELIVERY_WEBHOOK_SECRET is empty; delivery webhooks are unauthenticated")
    yield
    close_delivery_provider()
    engine.dispose()
    logger.info(f"{settings.NAME} stopped")


def create_application() -> FastAPI:
    application = FastAPI(title=settings.NAME, version=settings.VERSION, lifespan=lifespan)

    setup_error_handlers(application)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Webhook-Token"],
    )
    application.add_middleware(RequestIDMiddleware)

    application.include_router(main_router, prefix=settings.API_PREFIX, tags=["Scheduling"])
    application.include_router(webhook_router, prefix=settings.WEBHOOK_PREFIX, tags=["Webhooks"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cohort_scheduler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,
    )
