"""Tests for Stripe webhook verification and normalization."""

import hashlib
import hmac
import json
import time

import pytest

from sitehost.config import Settings
from sitehost.schemas.payment_event import (
    DomainPurchaseCompleted,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionPastDue,
)
from sitehost.services.errors import WebhookVerificationError
from sitehost.services.stripe_webhooks import StripeWebhookVerifier

SECRET = "whsec_unit_test"


def _sign(payload: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def verifier() -> StripeWebhookVerifier:
    settings = Settings(
        STRIPE_WEBHOOK_SECRET=SECRET,
        STRIPE_PRICE_MONTHLY="price_monthly",
        STRIPE_PRICE_STARTER="price_starter",
    )
    return StripeWebhookVerifier(settings)


def _subscription_event(status: str, event_type: str = "customer.subscription.updated") -> dict:
    return {
        "id": "evt_sub",
        "type": event_type,
        "created": 1767225600,
        "data": {
            "object": {
                "id": "sub_1",
                "status": status,
                "customer": "cus_1",
                "metadata": {"siteId": "site_1"},
                "items": {
                    "data": [
                        {"price": {"id": "price_monthly"}, "current_period_end": 1769904000},
                    ],
                },
            },
        },
    }


class TestVerify:
    def test_valid_signature(self, verifier):
        payload = json.dumps(_subscription_event("active"))

        event = verifier.verify(payload.encode(), _sign(payload))

        assert event["id"] == "evt_sub"

    def test_wrong_secret_is_rejected(self, verifier):
        payload = json.dumps(_subscription_event("active"))

        with pytest.raises(WebhookVerificationError):
            verifier.verify(payload.encode(), _sign(payload, secret="whsec_other"))

    def test_tampered_body_is_rejected(self, verifier):
        payload = json.dumps(_subscription_event("active"))
        header = _sign(payload)

        with pytest.raises(WebhookVerificationError):
            verifier.verify(payload.replace("active", "canceled").encode(), header)

    def test_old_timestamp_is_rejected(self, verifier):
        payload = json.dumps(_subscription_event("active"))

        with pytest.raises(WebhookVerificationError):
            verifier.verify(payload.encode(), _sign(payload, timestamp=int(time.time()) - 3600))

    def test_non_utf8_body_is_rejected(self, verifier):
        with pytest.raises(WebhookVerificationError, match="UTF-8"):
            verifier.verify(b"\xff\xfe\x00garbage", _sign("{}"))

    def test_missing_header(self, verifier):
        with pytest.raises(WebhookVerificationError, match="Missing"):
            verifier.verify(b"{}", None)


class TestNormalize:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("active", SubscriptionActivated),
            ("trialing", SubscriptionActivated),
            ("past_due", SubscriptionPastDue),
            ("unpaid", SubscriptionPastDue),
            ("canceled", SubscriptionCancelled),
        ],
    )
    def test_subscription_status(self, verifier, status, expected):
        event = verifier.normalize(_subscription_event(status))

        assert isinstance(event, expected)
        assert event.subscription_id == "sub_1"
        assert event.site_id == "site_1"
        assert event.plan == "pro"
        assert event.period_end.timestamp() == 1769904000

    def test_subscription_deleted_is_cancelled(self, verifier):
        event = verifier.normalize(
            _subscription_event("canceled", event_type="customer.subscription.deleted"),
        )

        assert event.type == "subscription.cancelled"

    def test_invoice_payment_failed(self, verifier):
        event = verifier.normalize({
            "id": "evt_inv",
            "type": "invoice.payment_failed",
            "created": 1767225600,
            "data": {
                "object": {
                    "customer": "cus_1",
                    "parent": {
                        "subscription_details": {
                            "subscription": "sub_1",
                            "metadata": {"siteId": "site_1"},
                        },
                    },
                    "lines": {
                        "data": [
                            {
                                "price": {"id": "price_starter"},
                                "period": {"start": 1767225600, "end": 1769904000},
                            },
                        ],
                    },
                },
            },
        })

        assert isinstance(event, SubscriptionPastDue)
        assert event.subscription_id == "sub_1"
        assert event.site_id == "site_1"
        assert event.plan == "starter"

    def test_invoice_without_subscription_is_ignored(self, verifier):
        event = verifier.normalize({
            "id": "evt_inv",
            "type": "invoice.paid",
            "created": 1767225600,
            "data": {"object": {"customer": "cus_1"}},
        })

        assert event is None

    def test_checkout_subscription_maps_plan_name(self, verifier):
        event = verifier.normalize({
            "id": "evt_co",
            "type": "checkout.session.completed",
            "created": 1767225600,
            "data": {
                "object": {
                    "id": "cs_1",
                    "subscription": "sub_1",
                    "customer": "cus_1",
                    "metadata": {"type": "subscription", "siteId": "site_1", "plan": "annual"},
                },
            },
        })

        assert isinstance(event, SubscriptionActivated)
        assert event.plan == "pro"

    def test_checkout_domain_purchase(self, verifier):
        event = verifier.normalize({
            "id": "evt_dp",
            "type": "checkout.session.completed",
            "created": 1767225600,
            "data": {
                "object": {
                    "id": "cs_dp",
                    "customer_email": "owner@example.com",
                    "metadata": {
                        "type": "domain_purchase",
                        "siteId": "site_1",
                        "userId": "user_1",
                        "domain": "MyShop.com",
                        "years": "2",
                        "contactFirstName": "Ada",
                        "contactLastName": "Lovelace",
                        "contactAddress1": "1 Main St",
                        "contactCity": "London",
                        "contactCountry": "GB",
                        "contactPhone": "+44.2071234567",
                    },
                },
            },
        })

        assert isinstance(event, DomainPurchaseCompleted)
        assert event.domain == "myshop.com"
        assert event.years == 2
        assert event.contact.first_name == "Ada"
        assert event.contact.email == "owner@example.com"

    def test_domain_purchase_without_contact(self, verifier):
        event = verifier.normalize({
            "id": "evt_dp",
            "type": "checkout.session.completed",
            "created": 1767225600,
            "data": {
                "object": {
                    "id": "cs_dp",
                    "metadata": {"type": "domain_purchase", "siteId": "site_1", "domain": "a.com"},
                },
            },
        })

        assert event.contact is None

    def test_malformed_handled_event(self, verifier):
        with pytest.raises(WebhookVerificationError, match="Malformed"):
            verifier.normalize({
                "id": "evt_bad",
                "type": "customer.subscription.updated",
                "data": {"object": {"status": "active"}},
            })

    def test_unhandled_type_is_ignored(self, verifier):
        assert verifier.normalize({"id": "evt_x", "type": "charge.refunded", "data": {}}) is None
