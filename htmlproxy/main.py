import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware

from htmlproxy.api.deps import close_orchestrator, get_orchestrator
from htmlproxy.api.router import api_router
from htmlproxy.config import settings
from htmlproxy.core.logging_config import configure_logging
from htmlproxy.middleware.request_id import RequestIDMiddleware

# Configure structured logging (must happen before any logger is created)
configure_logging(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.SENTRY_ENVIRONMENT,
        release=f"htmlproxy@{settings.APP_VERSION}",
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Browsers launch lazily on the first fetch
    orchestrator = get_orchestrator()
    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} listening on port {settings.PORT} "
        f"(persistent crawler: {orchestrator.persistent})"
    )

    yield

    logger.info("Shutting down...")
    await close_orchestrator()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Fetch fully rendered HTML through a real browser, with proxy rotation, "
    "fingerprinted sessions and bot-challenge handling.",
    lifespan=lifespan,
)

# Request ID middleware (must be added before other middleware)
app.add_middleware(RequestIDMiddleware)

app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("htmlproxy.main:app", host="0.0.0.0", port=settings.PORT)
