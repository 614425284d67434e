"""
Billing reconciler.

Applies normalized payment events to BillingState and to the
``suspended_by_billing`` flag of a site's activations. Delivery is
at-least-once and possibly out of order, so every event id is recorded and
older periods never override newer state.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from sitehost.models.billing_state import BillingState
from sitehost.models.domain_activation import ActivationState, DomainActivation
from sitehost.models.payment_event import PaymentEventRecord
from sitehost.models.types import utcnow
from sitehost.schemas.payment_event import (
    DomainPurchaseCompleted,
    PaymentEvent,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionEvent,
    SubscriptionPastDue,
    payment_event_adapter,
)
from sitehost.services.errors import IdempotencyConflict, UnknownSubscriptionError
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.services.purchase_service import handle_domain_purchase

logger = logging.getLogger(__name__)

PLANS_WITH_CUSTOM_DOMAIN = frozenset({"pro", "enterprise"})

# Payment event record statuses
PROCESSED = "processed"
IGNORED_STALE = "ignored_stale"
FAILED = "failed"

MAX_EVENT_ATTEMPTS = 3

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


async def _find_billing(db: AsyncSession, event: SubscriptionEvent) -> BillingState | None:
    conditions = [BillingState.subscription_id == event.subscription_id]
    if event.site_id:
        conditions.append(BillingState.site_id == event.site_id)
    result = await db.execute(select(BillingState).where(or_(*conditions)))
    rows = list(result.scalars().all())
    # Site id wins when the subscription moved between rows
    for row in rows:
        if row.site_id == event.site_id:
            return row
    return rows[0] if rows else None


def _is_stale(billing: BillingState, event: SubscriptionEvent) -> bool:
    """Order by (period end, event created); events without a period keep the stored one."""
    if billing.last_event_at is None:
        return False
    stored = (billing.period_end or _EPOCH, billing.last_event_at)
    incoming = (event.period_end or billing.period_end or _EPOCH, event.created)
    return incoming < stored


def _status_for(event: SubscriptionEvent) -> str:
    if isinstance(event, SubscriptionActivated):
        return "active"
    if isinstance(event, SubscriptionPastDue):
        return "past_due"
    if isinstance(event, SubscriptionCancelled):
        return "cancelled"
    raise TypeError(f"Unhandled subscription event {type(event).__name__}")


async def _set_suspension(
    db: AsyncSession,
    site_id: str,
    billing: BillingState,
    now: datetime,
) -> int:
    """
    Suspend live activations or lift suspensions, depending on billing.

    Every open activation is written, so a row promoted to live from an
    older billing read conflicts with this update instead of slipping past it.
    """
    result = await db.execute(
        select(DomainActivation).where(
            DomainActivation.site_id == site_id,
            DomainActivation.state != ActivationState.REMOVED.value,
        )
    )
    changed = 0
    for activation in result.scalars().all():
        if activation.state != ActivationState.FAILED.value:
            activation.updated_at = now
            flag_modified(activation, "updated_at")
        if billing.allows_custom_domain:
            if activation.suspended_by_billing:
                activation.suspended_by_billing = False
                changed += 1
        elif activation.state == ActivationState.LIVE.value and not activation.suspended_by_billing:
            activation.suspended_by_billing = True
            changed += 1
    return changed


async def _apply_subscription_event(
    db: AsyncSession,
    event: SubscriptionEvent,
    now: datetime,
) -> str:
    billing = await _find_billing(db, event)
    if billing is None:
        if not event.site_id:
            raise UnknownSubscriptionError(
                f"Subscription {event.subscription_id} is not linked to a site"
            )
        billing = BillingState(
            site_id=event.site_id,
            subscription_id=event.subscription_id,
            plan="free",
            status="active",
            plan_allows_custom_domain=False,
        )
        db.add(billing)
    elif _is_stale(billing, event):
        logger.info(
            f"Ignoring stale {event.type} for {billing.site_id} "
            f"(period end {event.period_end}, stored {billing.period_end})"
        )
        return IGNORED_STALE

    billing.status = _status_for(event)
    billing.subscription_id = event.subscription_id
    if event.customer_id:
        billing.customer_id = event.customer_id
    if event.plan:
        billing.plan = event.plan
        billing.plan_allows_custom_domain = event.plan in PLANS_WITH_CUSTOM_DOMAIN
    if event.period_end:
        billing.period_end = event.period_end
    billing.last_event_at = event.created

    changed = await _set_suspension(db, billing.site_id, billing, now)
    logger.info(
        f"Billing for {billing.site_id}: {billing.status}/{billing.plan}, "
        f"{changed} activation(s) updated"
    )
    return PROCESSED


async def on_payment_event(
    db: AsyncSession,
    event: PaymentEvent,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime | None = None,
) -> str:
    """
    Apply one normalized payment event.

    Replays of an already processed or ignored event id are no-ops. Failed
    events may be applied again.

    Args:
        db: Database session
        event: Normalized payment event
        providers: Provider adapters, used by domain purchases
        policy: Attempt and backoff constants
        now: Clock override

    Returns:
        The status recorded for the event id

    Raises:
        IdempotencyConflict: A row changed underneath; retry the event
        UnknownSubscriptionError: No site can be resolved for the event
    """
    now = now or utcnow()

    record = await db.get(PaymentEventRecord, event.event_id)
    if record is not None and record.status != FAILED:
        logger.info(f"Payment event {event.event_id} already {record.status}, skipping")
        return record.status

    if isinstance(event, DomainPurchaseCompleted):
        await handle_domain_purchase(db, event, providers, policy, now)
        status = PROCESSED
        site_id = event.site_id
    else:
        status = await _apply_subscription_event(db, event, now)
        site_id = event.site_id

    if record is None:
        record = PaymentEventRecord(event_id=event.event_id, received_at=now)
        db.add(record)
    record.event_type = event.type
    record.site_id = site_id
    record.status = status
    record.error = None
    record.payload = event.model_dump(mode="json")
    record.processed_at = now

    try:
        await db.flush()
    except StaleDataError as e:
        raise IdempotencyConflict(str(e)) from e
    return status


async def _record_failure(
    session_factory: async_sessionmaker[AsyncSession],
    event: PaymentEvent,
    error: Exception,
    now: datetime,
) -> None:
    """Keep a failed event for manual replay; never overwrite a handled one."""
    async with session_factory() as db:
        record = await db.get(PaymentEventRecord, event.event_id)
        if record is not None and record.status != FAILED:
            return
        if record is None:
            record = PaymentEventRecord(event_id=event.event_id, received_at=now)
            db.add(record)
        record.event_type = event.type
        record.site_id = event.site_id
        record.status = FAILED
        record.error = f"{type(error).__name__}: {error}"
        record.payload = event.model_dump(mode="json")
        record.processed_at = None
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"Payment event {event.event_id} was recorded concurrently")


async def ingest_payment_event(
    session_factory: async_sessionmaker[AsyncSession],
    event: PaymentEvent,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime | None = None,
) -> str:
    """
    Process one event in its own transaction.

    A failure is recorded against the event id and does not propagate, so
    one bad event never blocks the others.

    Returns:
        processed, ignored_stale or failed
    """
    now = now or utcnow()
    error: Exception | None = None

    for attempt in range(1, MAX_EVENT_ATTEMPTS + 1):
        async with session_factory() as db:
            try:
                status = await on_payment_event(db, event, providers, policy, now)
                await db.commit()
                return status
            except (IdempotencyConflict, IntegrityError, StaleDataError) as e:
                await db.rollback()
                error = e
                logger.info(
                    f"Payment event {event.event_id} conflicted "
                    f"(attempt {attempt}/{MAX_EVENT_ATTEMPTS})"
                )
            except Exception as e:
                await db.rollback()
                error = e
                logger.error(f"Payment event {event.event_id} failed: {e}", exc_info=True)
                break

    await _record_failure(session_factory, event, error, now)
    return FAILED


async def replay_failed_events(
    session_factory: async_sessionmaker[AsyncSession],
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
) -> dict[str, int]:
    """
    Reprocess every failed event in the order it was received.

    Returns:
        Count of events per resulting status
    """
    async with session_factory() as db:
        result = await db.execute(
            select(PaymentEventRecord)
            .where(PaymentEventRecord.status == FAILED)
            .order_by(PaymentEventRecord.received_at)
        )
        payloads = [record.payload for record in result.scalars().all()]

    outcomes: Counter[str] = Counter()
    for payload in payloads:
        event = payment_event_adapter.validate_python(payload)
        logger.info(f"Replaying payment event {event.event_id}")
        outcomes[await ingest_payment_event(session_factory, event, providers, policy)] += 1

    return dict(outcomes)


async def prune_payment_events(db: AsyncSession, older_than: datetime) -> int:
    """
    Forget handled event ids received before ``older_than``.

    Failed events are kept until replayed.
    """
    result = await db.execute(
        delete(PaymentEventRecord).where(
            PaymentEventRecord.status != FAILED,
            PaymentEventRecord.received_at < older_than,
        )
    )
    return result.rowcount or 0


async def prune_expired_events(
    session_factory: async_sessionmaker[AsyncSession],
    retention_days: int,
    now: datetime | None = None,
) -> int:
    """Scheduled retention job."""
    now = now or utcnow()
    async with session_factory() as db:
        deleted = await prune_payment_events(db, now - timedelta(days=retention_days))
        await db.commit()
    logger.info(f"Pruned {deleted} payment event record(s)")
    return deleted
