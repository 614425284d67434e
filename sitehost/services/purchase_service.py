"""Completion of paid domain purchases: register, then start activation."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sitehost.models.domain_activation import DomainSource
from sitehost.models.domain_purchase import DomainPurchase
from sitehost.schemas.payment_event import DomainPurchaseCompleted
from sitehost.services.domain_service import get_domain_status, request_domain_activation
from sitehost.services.errors import (
    CustomDomainNotAllowed,
    HostnameInUseError,
    RegistrationError,
)
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle

logger = logging.getLogger(__name__)


async def get_purchase(db: AsyncSession, checkout_session_id: str) -> DomainPurchase | None:
    result = await db.execute(
        select(DomainPurchase).where(DomainPurchase.checkout_session_id == checkout_session_id)
    )
    return result.scalar_one_or_none()


async def _attach(
    db: AsyncSession,
    purchase: DomainPurchase,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime | None,
) -> None:
    """Start (or find) the activation of a registered domain."""
    try:
        await request_domain_activation(
            db,
            site_id=purchase.site_id,
            hostname=purchase.domain,
            source=DomainSource.PURCHASED,
            providers=providers,
            policy=policy,
            registrar_order_ref=purchase.registrar_order_ref,
            now=now,
        )
    except (CustomDomainNotAllowed, HostnameInUseError) as e:
        # The domain is registered; the user can attach it once the block is lifted
        logger.warning(f"Registered {purchase.domain} but could not attach it: {e}")


async def handle_domain_purchase(
    db: AsyncSession,
    event: DomainPurchaseCompleted,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime | None = None,
) -> DomainPurchase:
    """
    Register a purchased domain exactly once and attach it to the site.

    The purchase row is committed as ``pending`` before the registrar is
    called, so a redelivered checkout event never registers twice. A pending
    row left behind by a crash is not retried automatically.

    Args:
        db: Database session
        event: Normalized checkout completion
        providers: Provider adapters
        policy: Attempt and backoff constants
        now: Clock override

    Returns:
        The purchase record
    """
    existing = await get_purchase(db, event.checkout_session_id)
    if existing:
        logger.info(
            f"Purchase for checkout {event.checkout_session_id} already handled ({existing.status})"
        )
        if (
            existing.status == "registered"
            and existing.registrar_order_ref
            and await get_domain_status(db, existing.site_id, existing.domain) is None
        ):
            # Registered, but an earlier attempt failed before attaching it
            await _attach(db, existing, providers, policy, now)
        return existing

    purchase = DomainPurchase(
        checkout_session_id=event.checkout_session_id,
        site_id=event.site_id,
        user_id=event.user_id,
        domain=event.domain,
        years=event.years,
        status="pending",
    )
    db.add(purchase)
    try:
        await db.flush()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await get_purchase(db, event.checkout_session_id)

    if event.contact is None:
        purchase.status = "failed"
        purchase.error = "Missing contact information"
        await db.commit()
        logger.error(f"Cannot register {event.domain}: missing contact information")
        return purchase

    try:
        registration = await providers.registrar.register(event.domain, event.years, event.contact)
    except RegistrationError as e:
        purchase.status = "failed"
        purchase.error = e.message
        await db.commit()
        logger.error(f"Registration of {event.domain} failed: {e.message}")
        return purchase

    purchase.status = "registered"
    purchase.registrar_order_ref = registration.order_ref
    await db.commit()
    logger.info(f"Registered {event.domain} (order {registration.order_ref})")

    await _attach(db, purchase, providers, policy, now)
    return purchase
