"""Shared FastAPI dependencies."""

import secrets
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from sitehost.config import settings
from sitehost.database import async_session_factory
from sitehost.services.cloudflare_client import CloudflareClient
from sitehost.services.dns_observer import DnsResolverObserver
from sitehost.services.namecheap_client import NamecheapClient
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.services.reconciliation_loop import ReconciliationLoop
from sitehost.services.stripe_webhooks import StripeWebhookVerifier

security = HTTPBasic()


def require_auth(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """Verify HTTP Basic Auth credentials against environment variables."""
    correct_username = secrets.compare_digest(credentials.username, settings.AUTH_USERNAME)
    correct_password = secrets.compare_digest(credentials.password, settings.AUTH_PASSWORD)
    if not (correct_username and correct_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@lru_cache
def get_providers() -> ProviderBundle:
    """Provider adapters built once from settings."""
    return ProviderBundle(
        registrar=NamecheapClient(settings),
        edge=CloudflareClient(settings),
        dns=DnsResolverObserver(settings),
    )


@lru_cache
def get_policy() -> ProvisioningPolicy:
    return ProvisioningPolicy.from_settings(settings)


@lru_cache
def get_stripe_verifier() -> StripeWebhookVerifier:
    return StripeWebhookVerifier(settings)


@lru_cache
def get_reconciliation_loop() -> ReconciliationLoop:
    """The single loop instance shared by the scheduler and the operator endpoint."""
    return ReconciliationLoop(
        async_session_factory,
        get_providers(),
        get_policy(),
        concurrency=settings.POLL_CONCURRENCY,
        batch_size=settings.POLL_BATCH_SIZE,
    )
