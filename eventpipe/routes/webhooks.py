"""
Inbound provider webhook routes.

Verifies the provider signature, records the raw event and hands it to the
incoming-webhook-processing queue. Reconciliation never runs in the request.
"""
import json

import stripe
from fastapi import APIRouter, Header, HTTPException, Request, status

from eventpipe.logging_config import get_logger
from eventpipe.routes.metrics import track_incoming_event
from eventpipe.services.incoming_webhooks import record_incoming_event
from eventpipe.services.stripe_service import stripe_service


router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = get_logger(component="WebhookReceiver")


@router.post("/stripe", response_model=dict)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """
    Receive a Stripe event.

    Duplicate deliveries of the same event id are acknowledged without being
    queued again.
    """
    payload = await request.body()

    if not stripe_signature:
        track_incoming_event("stripe", "rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header"
        )

    try:
        event = stripe_service.construct_webhook_event(payload, stripe_signature)
    except ValueError:
        track_incoming_event("stripe", "rejected")
        logger.warning("invalid_webhook_payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )
    except stripe.SignatureVerificationError:
        track_incoming_event("stripe", "rejected")
        logger.warning("invalid_webhook_signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    record_id, duplicate = await record_incoming_event(
        "stripe",
        event["id"],
        event["type"],
        json.loads(payload),
        signature=stripe_signature,
        verified=True,
    )

    return {
        "received": True,
        "duplicate": duplicate,
        "event_record_id": record_id,
    }
