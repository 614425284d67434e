"""Custom domain management: requesting, reading, removing and serving checks."""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from sitehost.models.billing_state import BillingState
from sitehost.models.domain_activation import (
    TERMINAL_STATES,
    ActivationState,
    DomainActivation,
    DomainSource,
)
from sitehost.models.types import utcnow
from sitehost.services.activation_machine import advance, teardown
from sitehost.services.errors import (
    CustomDomainNotAllowed,
    ExhaustedRetries,
    HostnameInUseError,
    IdempotencyConflict,
)
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.utils.hostname_validator import normalize_hostname

logger = logging.getLogger(__name__)

OPEN_STATES = [s.value for s in ActivationState if s not in TERMINAL_STATES]

# Compare-and-set retries for user-initiated writes
MAX_WRITE_RETRIES = 3


async def _open_activation(db: AsyncSession, hostname: str) -> DomainActivation | None:
    """The non-terminal activation of a hostname, whichever site owns it."""
    result = await db.execute(
        select(DomainActivation).where(
            DomainActivation.hostname == hostname,
            DomainActivation.state.in_(OPEN_STATES),
        )
    )
    return result.scalar_one_or_none()


async def _check_billing(db: AsyncSession, site_id: str) -> None:
    billing = await db.get(BillingState, site_id)
    if billing is None or not billing.allows_custom_domain:
        raise CustomDomainNotAllowed(
            f"Site {site_id} plan does not include custom domains"
        )


async def _claim_existing(
    db: AsyncSession,
    site_id: str,
    hostname: str,
) -> DomainActivation | None:
    existing = await _open_activation(db, hostname)
    if existing is None:
        return None
    if existing.site_id != site_id:
        raise HostnameInUseError(f"{hostname} is already attached to another site")
    logger.info(f"Activation for {hostname} already open ({existing.state})")
    return existing


async def _advance_and_commit(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime,
) -> None:
    """Run one step; conflicts and exhaustion are left for the loop and the user."""
    try:
        await advance(db, activation, providers, policy, now)
        await db.commit()
    except ExhaustedRetries as e:
        await db.commit()
        logger.warning(f"Activation for {e.hostname} failed: {e.reason}")
    except IdempotencyConflict:
        await db.rollback()
        await db.refresh(activation)
        logger.info(f"Activation for {activation.hostname} changed concurrently")


async def request_domain_activation(
    db: AsyncSession,
    site_id: str,
    hostname: str,
    source: DomainSource | str,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    registrar_order_ref: str | None = None,
    now: datetime | None = None,
) -> tuple[DomainActivation, bool]:
    """
    Start attaching a hostname to a site, or return the open activation.

    The new row is committed before any provider call, so a concurrent request
    for the same hostname hits the unique index instead of creating a second
    edge object. The first step runs immediately; registrar-managed hostnames
    also get their host records pushed right away.

    Args:
        db: Database session
        site_id: Owning site
        hostname: Customer hostname (normalized here)
        source: purchased or existing
        providers: Provider adapters
        policy: Attempt and backoff constants
        registrar_order_ref: Registration reference for purchased domains
        now: Clock override

    Returns:
        Tuple of (activation, created)

    Raises:
        InvalidHostnameError: Hostname is not a valid DNS name
        HostnameInUseError: Another site holds an open activation for it
        CustomDomainNotAllowed: The site's plan or status forbids custom domains
    """
    hostname = normalize_hostname(hostname)
    source = DomainSource(source)
    now = now or utcnow()

    existing = await _claim_existing(db, site_id, hostname)
    if existing:
        return existing, False

    await _check_billing(db, site_id)

    activation = DomainActivation(
        site_id=site_id,
        hostname=hostname,
        source=source.value,
        state=ActivationState.REQUESTED.value,
        registrar_order_ref=registrar_order_ref,
        max_attempts=policy.max_attempts,
        next_check_at=now,
    )
    db.add(activation)
    try:
        await db.flush()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(f"Lost the race to create an activation for {hostname}")
        existing = await _claim_existing(db, site_id, hostname)
        if existing:
            return existing, False
        raise

    logger.info(f"Activation requested for {hostname} (site {site_id}, {source.value})")

    await _advance_and_commit(db, activation, providers, policy, now)
    if (
        activation.state == ActivationState.AWAITING_DNS.value
        and activation.registrar_managed
        and activation.dns_records_published_at is None
    ):
        await _advance_and_commit(db, activation, providers, policy, now)

    return activation, True


async def get_domain_status(
    db: AsyncSession,
    site_id: str,
    hostname: str,
) -> DomainActivation | None:
    """
    Current activation of a hostname for a site.

    Prefers the open record; otherwise the most recent terminal one, so a
    failed activation keeps showing its reason until a fresh request.
    """
    hostname = hostname.strip().lower().rstrip(".")
    result = await db.execute(
        select(DomainActivation)
        .where(
            DomainActivation.site_id == site_id,
            DomainActivation.hostname == hostname,
        )
        .order_by(DomainActivation.created_at.desc())
    )
    activations = list(result.scalars().all())
    for activation in activations:
        if not activation.is_terminal:
            return activation
    return activations[0] if activations else None


async def list_site_domains(
    db: AsyncSession,
    site_id: str,
) -> tuple[list[DomainActivation], int]:
    """
    List every activation of a site, newest first.

    Args:
        db: Database session
        site_id: Owning site

    Returns:
        Tuple of (activation list, total count)
    """
    count_result = await db.execute(
        select(func.count())
        .select_from(DomainActivation)
        .where(DomainActivation.site_id == site_id)
    )
    total = count_result.scalar() or 0

    result = await db.execute(
        select(DomainActivation)
        .where(DomainActivation.site_id == site_id)
        .order_by(DomainActivation.created_at.desc())
    )
    return list(result.scalars().all()), total


async def _mark_teardown(
    db: AsyncSession,
    activation: DomainActivation,
    now: datetime,
) -> bool:
    """Flag a row for teardown with a versioned write; False if it is already removed."""
    for _ in range(MAX_WRITE_RETRIES):
        if activation.state == ActivationState.REMOVED.value:
            return False
        activation.teardown_requested = True
        activation.next_check_at = now
        try:
            await db.flush()
            await db.commit()
            return True
        except StaleDataError:
            await db.rollback()
            await db.refresh(activation)
    raise IdempotencyConflict(f"Could not flag {activation.hostname} for teardown")


async def _teardown_rows(
    db: AsyncSession,
    activations: list[DomainActivation],
    providers: ProviderBundle,
    now: datetime,
) -> int:
    removed = 0
    for activation in activations:
        if not await _mark_teardown(db, activation, now):
            continue
        try:
            await teardown(db, activation, providers, now)
            await db.commit()
            removed += 1
        except IdempotencyConflict:
            # Flag is committed; the loop finishes the teardown
            await db.rollback()
            logger.info(f"Teardown of {activation.hostname} deferred to the loop")
    return removed


async def remove_domain(
    db: AsyncSession,
    site_id: str,
    hostname: str,
    providers: ProviderBundle,
    now: datetime | None = None,
) -> bool:
    """
    Detach a hostname from a site.

    The teardown flag is committed first so a row mid-transition is torn down
    by the loop even if this call loses a race.

    Returns:
        True if any activation was found for the hostname
    """
    hostname = hostname.strip().lower().rstrip(".")
    now = now or utcnow()
    result = await db.execute(
        select(DomainActivation).where(
            DomainActivation.site_id == site_id,
            DomainActivation.hostname == hostname,
            DomainActivation.state != ActivationState.REMOVED.value,
        )
    )
    activations = list(result.scalars().all())
    if not activations:
        return False

    await _teardown_rows(db, activations, providers, now)
    logger.info(f"Removed {hostname} from site {site_id}")
    return True


async def remove_site(
    db: AsyncSession,
    site_id: str,
    providers: ProviderBundle,
    now: datetime | None = None,
) -> int:
    """Tear down every activation of a deleted site. Returns how many were removed."""
    now = now or utcnow()
    result = await db.execute(
        select(DomainActivation).where(
            DomainActivation.site_id == site_id,
            DomainActivation.state != ActivationState.REMOVED.value,
        )
    )
    removed = await _teardown_rows(db, list(result.scalars().all()), providers, now)
    logger.info(f"Site {site_id} deleted, {removed} domain(s) torn down")
    return removed


async def is_serving_allowed(db: AsyncSession, site_id: str, hostname: str) -> bool:
    """The edge-routing predicate: live and not suspended by billing."""
    activation = await get_domain_status(db, site_id, hostname)
    return activation is not None and activation.serving_allowed


async def serving_activation(db: AsyncSession, hostname: str) -> DomainActivation | None:
    """Open activation of a hostname, for routing lookups that know no site."""
    return await _open_activation(db, hostname.strip().lower().rstrip("."))
