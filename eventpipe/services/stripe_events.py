"""
Stripe event reconciliation.

Each handler takes the reconcile context (open service-context session plus
an outbox of owner notices) and the event's data.object, and converges the
local Customer/Subscription mirror onto it. Handlers are keyed by event type
in STRIPE_EVENT_HANDLERS; unknown types are a no-op.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventpipe.config import get_plan_for_price
from eventpipe.database import dialect_insert
from eventpipe.logging_config import get_logger
from eventpipe.models.base import utcnow
from eventpipe.models.billing import Customer, Subscription
from eventpipe.services.notifications import OwnerNotice

logger = get_logger(component="StripeEvents")


@dataclass
class ReconcileContext:
    session: AsyncSession
    event_record_id: str
    notices: list[OwnerNotice] = field(default_factory=list)


StripeObject = dict[str, Any]
EventHandler = Callable[[ReconcileContext, StripeObject], Awaitable[None]]


def from_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def expandable_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def first_item(subscription: StripeObject) -> StripeObject:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def invoice_subscription_id(invoice: StripeObject) -> str | None:
    """Subscription id of an invoice, across API versions."""
    subscription_id = expandable_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return expandable_id(details.get("subscription"))


async def get_customer_by_stripe_id(session: AsyncSession, stripe_customer_id: str) -> Customer | None:
    result = await session.execute(
        select(Customer).where(Customer.stripe_customer_id == stripe_customer_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_id(session: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def upsert_customer(
    session: AsyncSession,
    org_id: str,
    stripe_customer_id: str,
    email: str | None = None,
    name: str | None = None,
) -> Customer:
    """Link an org to its Stripe customer, keyed by org_id."""
    stmt = dialect_insert(session, Customer).values(
        org_id=org_id,
        stripe_customer_id=stripe_customer_id,
        email=email,
        name=name,
    )
    update_values = {"stripe_customer_id": stripe_customer_id, "updated_at": utcnow()}
    if email:
        update_values["email"] = email
    if name:
        update_values["name"] = name
    stmt = stmt.on_conflict_do_update(index_elements=[Customer.org_id], set_=update_values)
    await session.execute(stmt)
    return await get_customer_by_stripe_id(session, stripe_customer_id)


async def handle_checkout_completed(ctx: ReconcileContext, checkout_session: StripeObject) -> None:
    stripe_customer_id = expandable_id(checkout_session.get("customer"))
    metadata = checkout_session.get("metadata") or {}
    org_id = metadata.get("org_id") or checkout_session.get("client_reference_id")

    if not stripe_customer_id or not org_id:
        logger.info("checkout_without_org_reference", checkout_session_id=checkout_session.get("id"))
        return

    details = checkout_session.get("customer_details") or {}
    await upsert_customer(
        ctx.session,
        org_id,
        stripe_customer_id,
        email=details.get("email") or checkout_session.get("customer_email"),
        name=details.get("name"),
    )
    # The subscription row itself arrives with customer.subscription.created
    logger.debug("checkout_customer_linked", org_id=org_id, stripe_customer_id=stripe_customer_id)


async def handle_subscription_change(ctx: ReconcileContext, subscription: StripeObject) -> None:
    stripe_customer_id = expandable_id(subscription.get("customer"))
    customer = await get_customer_by_stripe_id(ctx.session, stripe_customer_id) if stripe_customer_id else None

    if customer is None:
        org_id = (subscription.get("metadata") or {}).get("org_id")
        if not org_id or not stripe_customer_id:
            logger.error("customer_not_found", stripe_customer_id=stripe_customer_id, subscription_id=subscription.get("id"))
            return
        customer = await upsert_customer(ctx.session, org_id, stripe_customer_id)

    item = first_item(subscription)
    price_id = (item.get("price") or {}).get("id") or ""
    values = {
        "stripe_price_id": price_id,
        "plan": get_plan_for_price(price_id),
        "status": subscription.get("status") or "incomplete",
        "current_period_start": from_timestamp(
            subscription.get("current_period_start") or item.get("current_period_start")
        ),
        "current_period_end": from_timestamp(
            subscription.get("current_period_end") or item.get("current_period_end")
        ),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "canceled_at": from_timestamp(subscription.get("canceled_at")),
    }

    stmt = dialect_insert(ctx.session, Subscription).values(
        org_id=customer.org_id,
        customer_id=customer.id,
        stripe_subscription_id=subscription["id"],
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.stripe_subscription_id],
        set_={**values, "updated_at": utcnow()},
    )
    await ctx.session.execute(stmt)

    logger.debug("subscription_upserted", org_id=customer.org_id, subscription_id=subscription["id"], status=values["status"])


async def handle_subscription_deleted(ctx: ReconcileContext, subscription: StripeObject) -> None:
    local = await get_subscription_by_stripe_id(ctx.session, subscription["id"])
    if local is None:
        logger.info("deleted_subscription_unknown", subscription_id=subscription["id"])
        return

    local.status = "canceled"
    local.canceled_at = from_timestamp(subscription.get("canceled_at")) or utcnow()
    local.cancel_at_period_end = False

    ctx.notices.append(OwnerNotice(
        org_id=local.org_id,
        type="billing.subscription_canceled",
        title="Your subscription has been canceled",
        body=f"The {local.plan} subscription for your organisation is no longer active.",
        link="/settings/billing",
    ))


async def handle_invoice_paid(ctx: ReconcileContext, invoice: StripeObject) -> None:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        return

    local = await get_subscription_by_stripe_id(ctx.session, subscription_id)
    if local is not None and local.status == "past_due":
        local.status = "active"
        logger.debug("subscription_recovered", subscription_id=subscription_id, invoice_id=invoice.get("id"))


async def handle_invoice_payment_failed(ctx: ReconcileContext, invoice: StripeObject) -> None:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logger.debug("invoice_without_subscription", invoice_id=invoice.get("id"))
        return

    local = await get_subscription_by_stripe_id(ctx.session, subscription_id)
    if local is None:
        logger.info("failed_invoice_subscription_unknown", subscription_id=subscription_id)
        return

    local.status = "past_due"

    ctx.notices.append(OwnerNotice(
        org_id=local.org_id,
        type="billing.payment_failed",
        title="Payment failed",
        body="We could not collect payment for your subscription. Please update your payment method.",
        link="/settings/billing",
    ))


async def handle_customer_updated(ctx: ReconcileContext, customer: StripeObject) -> None:
    local = await get_customer_by_stripe_id(ctx.session, customer["id"])
    if local is None:
        return
    local.email = customer.get("email") or None
    local.name = customer.get("name") or None


STRIPE_EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_change,
    "customer.subscription.updated": handle_subscription_change,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.updated": handle_customer_updated,
}


async def handle_stripe_event(ctx: ReconcileContext, event_type: str, event: StripeObject) -> None:
    handler = STRIPE_EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.debug("unhandled_stripe_event", event_type=event_type)
        return
    await handler(ctx, (event.get("data") or {}).get("object") or {})
