"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from eventpipe.database import engine
from eventpipe.models.base import Base
# Imported to register their tables with Base.metadata
from eventpipe.models.organisation import Organisation  # noqa: F401
from eventpipe.models.user import User  # noqa: F401
from eventpipe.models.webhook import WebhookEndpoint, WebhookDelivery  # noqa: F401
from eventpipe.models.incoming_event import IncomingWebhookEvent  # noqa: F401
from eventpipe.models.billing import Customer, Subscription  # noqa: F401
from eventpipe.models.usage import UsageRecord  # noqa: F401
from eventpipe.models.notification import Notification  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
