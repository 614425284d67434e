"""Payment webhook routes."""

import logging

from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitehost.database import get_session_factory
from sitehost.dependencies import get_policy, get_providers, get_stripe_verifier
from sitehost.schemas.common import raise_api_error
from sitehost.schemas.webhook import WebhookResponse
from sitehost.services.billing_reconciler import ingest_payment_event
from sitehost.services.errors import WebhookVerificationError
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.services.stripe_webhooks import StripeWebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    verifier: StripeWebhookVerifier = Depends(get_stripe_verifier),
    providers: ProviderBundle = Depends(get_providers),
    policy: ProvisioningPolicy = Depends(get_policy),
) -> WebhookResponse:
    """
    Handle Stripe events.

    This endpoint:
    1. Verifies the `Stripe-Signature` header against the raw body
    2. Normalizes the event into a subscription or domain purchase event
    3. Applies it in its own transaction, keyed by the Stripe event id

    **Stripe Event Types Handled:**
    - `customer.subscription.created` / `.updated` / `.deleted`
    - `invoice.paid`, `invoice.payment_failed`
    - `checkout.session.completed` (subscription or domain purchase)

    **Delivery:**
    Verified events always get 200. Processing failures are recorded and can
    be replayed by an operator; redelivered event ids are no-ops.
    """
    body = await request.body()

    try:
        event = verifier.construct_event(body, stripe_signature)
    except WebhookVerificationError as e:
        logger.warning(f"Rejected Stripe webhook: {e}")
        raise_api_error(
            code="INVALID_WEBHOOK",
            message=str(e),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    if event is None:
        return WebhookResponse(success=True, message="Event ignored")

    logger.info(f"Received Stripe event {event.event_id} ({event.type})")
    result = await ingest_payment_event(session_factory, event, providers, policy)

    return WebhookResponse(
        success=True,
        message="Event received",
        event_type=event.type,
        event_id=event.event_id,
        status=result,
    )
