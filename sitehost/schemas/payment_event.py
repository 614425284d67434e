"""Normalized payment events produced once at the webhook boundary."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from sitehost.schemas.provider import RegistrantContact


class SubscriptionEvent(BaseModel):
    """Fields shared by every subscription lifecycle event."""

    event_id: str = Field(..., description="Provider event id, used for idempotency")
    created: datetime = Field(..., description="When the provider created the event")
    subscription_id: str
    site_id: str | None = None
    customer_id: str | None = None
    price_id: str | None = None
    plan: str | None = None
    period_end: datetime | None = Field(
        default=None,
        description="Provider period end; newer periods win over older ones",
    )


class SubscriptionActivated(SubscriptionEvent):
    type: Literal["subscription.activated"] = "subscription.activated"


class SubscriptionPastDue(SubscriptionEvent):
    type: Literal["subscription.pastDue"] = "subscription.pastDue"


class SubscriptionCancelled(SubscriptionEvent):
    type: Literal["subscription.cancelled"] = "subscription.cancelled"


class DomainPurchaseCompleted(BaseModel):
    """Checkout for a domain purchase completed; registration still pending."""

    type: Literal["domain.purchaseCompleted"] = "domain.purchaseCompleted"
    event_id: str
    created: datetime
    checkout_session_id: str
    site_id: str
    user_id: str | None = None
    domain: str
    years: int = 1
    contact: RegistrantContact | None = None


PaymentEvent = Annotated[
    Union[
        SubscriptionActivated,
        SubscriptionPastDue,
        SubscriptionCancelled,
        DomainPurchaseCompleted,
    ],
    Field(discriminator="type"),
]

payment_event_adapter: TypeAdapter[PaymentEvent] = TypeAdapter(PaymentEvent)
