"""Stripe webhook verification and normalization into payment events."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from pydantic import ValidationError

from sitehost.config import Settings
from sitehost.schemas.payment_event import (
    DomainPurchaseCompleted,
    PaymentEvent,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionPastDue,
)
from sitehost.schemas.provider import RegistrantContact
from sitehost.services.errors import WebhookVerificationError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = {"active", "trialing"}
PAST_DUE_STATUSES = {"past_due", "unpaid", "incomplete"}
CANCELLED_STATUSES = {"canceled", "incomplete_expired"}

# Checkout metadata plan names -> internal plans
CHECKOUT_PLAN_NAMES = {
    "starter": "starter",
    "monthly": "pro",
    "annual": "pro",
    "pro": "pro",
    "biennial": "enterprise",
    "enterprise": "enterprise",
}


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(obj: dict[str, Any], key: str) -> dict[str, Any]:
    data = (obj.get(key) or {}).get("data") or []
    return data[0] if data else {}


class StripeWebhookVerifier:
    """Verifies Stripe signatures and produces normalized payment events."""

    def __init__(self, settings: Settings, tolerance: int = 300):
        self.secret = settings.STRIPE_WEBHOOK_SECRET
        self.plan_price_ids = settings.plan_price_ids
        self.tolerance = tolerance

    def verify(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """
        Verify the ``Stripe-Signature`` header and decode the event.

        Raises:
            WebhookVerificationError: Missing or invalid signature, or bad JSON
        """
        if not signature_header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        if not self.secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookVerificationError("Payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self.secret,
                self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe signature verification failed: {e}")
            raise WebhookVerificationError("Invalid Stripe signature")

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookVerificationError(f"Invalid JSON payload: {e}")

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise WebhookVerificationError("Payload is not a Stripe event")
        return event

    def _plan_for(self, price_id: str | None) -> str | None:
        if not price_id:
            return None
        return self.plan_price_ids.get(price_id, "free")

    def _subscription_fields(self, subscription: dict[str, Any]) -> dict[str, Any]:
        item = _first_item(subscription, "items")
        price_id = (item.get("price") or {}).get("id")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")
        return {
            "subscription_id": subscription["id"],
            "site_id": (subscription.get("metadata") or {}).get("siteId"),
            "customer_id": subscription.get("customer"),
            "price_id": price_id,
            "plan": self._plan_for(price_id),
            "period_end": _timestamp(period_end),
        }

    def _invoice_fields(self, invoice: dict[str, Any]) -> dict[str, Any] | None:
        details = invoice.get("subscription_details") or {}
        parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = invoice.get("subscription") or parent_details.get("subscription")
        if not subscription_id:
            return None

        line = _first_item(invoice, "lines")
        price_id = (line.get("price") or {}).get("id")
        metadata = details.get("metadata") or parent_details.get("metadata") or {}
        return {
            "subscription_id": subscription_id,
            "site_id": metadata.get("siteId"),
            "customer_id": invoice.get("customer"),
            "price_id": price_id,
            "plan": self._plan_for(price_id),
            "period_end": _timestamp((line.get("period") or {}).get("end")),
        }

    def _checkout_event(self, base: dict[str, Any], session: dict[str, Any]) -> PaymentEvent | None:
        metadata = session.get("metadata") or {}
        kind = metadata.get("type")

        if kind == "subscription" and session.get("subscription"):
            return SubscriptionActivated(
                **base,
                subscription_id=session["subscription"],
                site_id=metadata.get("siteId"),
                customer_id=session.get("customer"),
                plan=CHECKOUT_PLAN_NAMES.get((metadata.get("plan") or "").lower(), "free"),
            )

        if kind == "domain_purchase":
            contact = None
            if metadata.get("contactFirstName") and metadata.get("contactLastName"):
                contact = RegistrantContact(
                    first_name=metadata["contactFirstName"],
                    last_name=metadata["contactLastName"],
                    address1=metadata.get("contactAddress1", ""),
                    city=metadata.get("contactCity", ""),
                    state_province=metadata.get("contactState", ""),
                    postal_code=metadata.get("contactPostalCode", ""),
                    country=metadata.get("contactCountry", "US"),
                    phone=metadata.get("contactPhone", "+1.0000000000"),
                    email=metadata.get("contactEmail") or session.get("customer_email") or "",
                )
            return DomainPurchaseCompleted(
                **base,
                checkout_session_id=session["id"],
                site_id=metadata["siteId"],
                user_id=metadata.get("userId"),
                domain=metadata["domain"].lower(),
                years=int(metadata.get("years") or 1),
                contact=contact,
            )

        return None

    def normalize(self, event: dict[str, Any]) -> PaymentEvent | None:
        """
        Map a Stripe event onto the closed set of payment events.

        Returns:
            The normalized event, or None for event types we do not act on

        Raises:
            WebhookVerificationError: A handled event type with missing fields
        """
        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}
        base = {"event_id": event["id"], "created": _timestamp(event.get("created")) or datetime.now(timezone.utc)}

        try:
            if event_type in ("customer.subscription.created", "customer.subscription.updated"):
                fields = self._subscription_fields(obj)
                status = obj.get("status")
                if status in ACTIVE_STATUSES:
                    return SubscriptionActivated(**base, **fields)
                if status in PAST_DUE_STATUSES:
                    return SubscriptionPastDue(**base, **fields)
                if status in CANCELLED_STATUSES:
                    return SubscriptionCancelled(**base, **fields)
                return None

            if event_type == "customer.subscription.deleted":
                return SubscriptionCancelled(**base, **self._subscription_fields(obj))

            if event_type in ("invoice.paid", "invoice.payment_failed"):
                fields = self._invoice_fields(obj)
                if fields is None:
                    return None
                if event_type == "invoice.paid":
                    return SubscriptionActivated(**base, **fields)
                return SubscriptionPastDue(**base, **fields)

            if event_type == "checkout.session.completed":
                return self._checkout_event(base, obj)

        except (KeyError, ValueError, ValidationError) as e:
            raise WebhookVerificationError(f"Malformed {event_type} event: {e}")

        logger.debug(f"Ignoring Stripe event type {event_type}")
        return None

    def construct_event(self, payload: bytes, signature_header: str | None) -> PaymentEvent | None:
        """Verify then normalize in one step."""
        return self.normalize(self.verify(payload, signature_header))
