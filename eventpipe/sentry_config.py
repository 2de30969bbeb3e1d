"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the HTTP receiver and the worker.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from eventpipe.config import settings
from eventpipe.logging_config import get_logger

logger = get_logger(component="Sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception()
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info", **tags):
    """
    Capture a message to Sentry with optional tags.

    Usage:
        capture_message("Webhook endpoint exhausted retries", level="warning", endpoint_id=endpoint_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        sentry_sdk.capture_message(message, level=level)
