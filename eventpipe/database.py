"""
Database engine and service-context data access.

Pipeline handlers operate across every organisation, so they never use a
tenant-scoped session. All of their reads and writes go through
run_with_service_context(), which opens one transaction and marks it as a
service transaction so row-level tenant policies are bypassed.
"""
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from eventpipe.config import settings


T = TypeVar("T")

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def run_with_service_context(
    label: str,
    fn: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """
    Run fn inside a single tenant-bypassing transaction.

    Commits when fn returns, rolls back and re-raises when it raises.

    Args:
        label: Caller name, recorded as the service reason (e.g. "UsageAggregation.upsertRecord")
        fn: Coroutine function receiving the session

    Returns:
        Whatever fn returns
    """
    async with AsyncSessionLocal() as session:
        async with session.begin():
            if session.get_bind().dialect.name == "postgresql":
                await session.execute(text("SELECT set_config('app.bypass_rls', 'true', true)"))
                await session.execute(
                    text("SELECT set_config('app.service_reason', :reason, true)"),
                    {"reason": label},
                )
            return await fn(session)


def dialect_insert(session: AsyncSession, table):
    """Return an insert() supporting on_conflict_do_update for the session's dialect."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)
