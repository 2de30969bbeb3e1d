"""
Notification Service

Owner fan-out enqueues one notification job per recipient; the notification
queue handler persists an in-app Notification row for that recipient.
"""
from typing import Awaitable, Callable

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.database import run_with_service_context
from eventpipe.logging_config import get_logger
from eventpipe.models.notification import Notification
from eventpipe.models.user import User, UserRole
from eventpipe.queue import NOTIFICATION_QUEUE, enqueue

logger = get_logger(component="Notifications")

EnqueueFn = Callable[..., Awaitable[str | None]]


class NotificationRecipientNotFound(Exception):
    pass


class NotificationJob(BaseModel):
    """Payload of a notification job."""
    user_id: str
    org_id: str | None = None
    type: str
    title: str
    body: str | None = None
    link: str | None = None


class OwnerNotice(BaseModel):
    """A notification addressed to every owner of an organisation."""
    org_id: str
    type: str
    title: str
    body: str | None = None
    link: str | None = None


async def get_owner_ids(session: AsyncSession, org_id: str) -> list[str]:
    result = await session.execute(
        select(User.id).where(User.org_id == org_id, User.role == UserRole.OWNER)
    )
    return list(result.scalars().all())


async def notify_org_owners(
    notice: OwnerNotice,
    *,
    dedupe_key: str | None = None,
    enqueue_fn: EnqueueFn = enqueue,
) -> int:
    """
    Enqueue one notification job per OWNER of notice.org_id.

    With dedupe_key set, job ids are "notify:{dedupe_key}:{user_id}" so a
    redelivered trigger does not notify the same owner twice.

    Returns:
        Number of jobs handed to the queue
    """
    owner_ids = await run_with_service_context(
        "Notifications.getOwners",
        lambda session: get_owner_ids(session, notice.org_id),
    )

    for user_id in owner_ids:
        job = NotificationJob(user_id=user_id, **notice.model_dump())
        job_id = f"notify:{dedupe_key}:{user_id}" if dedupe_key else None
        await enqueue_fn(NOTIFICATION_QUEUE, job.model_dump(), job_id=job_id)

    logger.info("owners_notified", org_id=notice.org_id, type=notice.type, recipients=len(owner_ids))
    return len(owner_ids)


async def send_notification(job: NotificationJob) -> dict:
    """
    Persist an in-app notification for one user.

    Raises:
        NotificationRecipientNotFound: the user no longer exists
    """
    async def _create(session: AsyncSession):
        user = await session.get(User, job.user_id)
        if user is None:
            raise NotificationRecipientNotFound(f"User {job.user_id} not found")

        notification = Notification(
            user_id=user.id,
            org_id=job.org_id or user.org_id,
            type=job.type,
            title=job.title,
            body=job.body,
            link=job.link,
        )
        session.add(notification)
        await session.flush()
        return notification.id

    notification_id = await run_with_service_context("Notifications.create", _create)
    logger.info("notification_created", user_id=job.user_id, type=job.type, notification_id=notification_id)
    return {"success": True, "notification_id": notification_id}
