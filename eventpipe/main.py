"""
EventPipe - external event pipeline

FastAPI application entry point. Serves the provider webhook receiver,
health and metrics; all processing happens in the ARQ workers.
"""
from fastapi import FastAPI

# Import observability modules
from eventpipe.config import settings
from eventpipe.logging_config import configure_logging
from eventpipe.sentry_config import configure_sentry
from eventpipe.middleware.logging import LoggingMiddleware
from eventpipe.routes.metrics import router as metrics_router

from eventpipe.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Outbound webhook delivery, billing event ingestion and usage metering",
)

app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Provider webhook receiver
app.include_router(webhooks_router)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Liveness check."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
    }
