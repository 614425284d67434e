"""
Domain activation state machine.

Drives one DomainActivation through
requested -> awaiting_dns -> awaiting_certificate -> live, with failed and
removed as terminal states. Each step makes at most one provider call and then
one versioned write, so nothing is recorded before the provider result is known.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from sitehost.logging_config import activation_context
from sitehost.models.billing_state import BillingState
from sitehost.models.domain_activation import (
    ActivationState,
    CertificateStatus,
    DomainActivation,
)
from sitehost.models.types import utcnow
from sitehost.schemas.provider import DnsObservation, DnsRecord
from sitehost.services.errors import (
    ExhaustedRetries,
    IdempotencyConflict,
    NonRetryableProviderError,
    ProviderError,
    TransientProviderError,
)
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.utils.hostname_validator import registrable_domain

logger = logging.getLogger(__name__)

# Wording shown to users when a state runs out of attempts
EXHAUSTED_REASONS = {
    ActivationState.REQUESTED: "custom hostname not created after {n} attempts",
    ActivationState.AWAITING_DNS: "DNS validation not observed after {n} attempts",
    ActivationState.AWAITING_CERTIFICATE: "certificate not issued after {n} attempts",
}
DNS_PUBLISH_REASON = "DNS records not published after {n} attempts"
CERTIFICATE_REGRESSION_REASON = "certificate status kept regressing"


async def _persist(db: AsyncSession) -> None:
    """Flush pending changes as a compare-and-set on the version column."""
    try:
        await db.flush()
    except StaleDataError as e:
        raise IdempotencyConflict(str(e)) from e


def instructions_of(activation: DomainActivation) -> list[DnsRecord]:
    return [DnsRecord.model_validate(r) for r in activation.dns_instructions or []]


async def _fail(
    db: AsyncSession,
    activation: DomainActivation,
    reason: str,
    now: datetime,
) -> None:
    activation.state = ActivationState.FAILED.value
    activation.failure_reason = reason
    activation.last_checked_at = now
    activation.next_check_at = None
    await _persist(db)
    logger.warning(f"Activation {activation.id} failed: {reason}")


async def _advance_to(
    db: AsyncSession,
    activation: DomainActivation,
    state: ActivationState,
    now: datetime,
) -> None:
    """Forward transition: attempts restart and the next check is due at once."""
    previous = activation.state
    activation.state = state.value
    activation.attempts = 0
    activation.last_checked_at = now
    activation.next_check_at = now
    await _persist(db)
    logger.info(f"Activation {activation.id}: {previous} -> {state.value}")


async def _record_unsuccessful(
    db: AsyncSession,
    activation: DomainActivation,
    policy: ProvisioningPolicy,
    now: datetime,
    reason_template: str,
) -> None:
    """
    Count one unsuccessful check and schedule the next one with backoff.

    Raises:
        ExhaustedRetries: The attempt cap was reached; the row is already
            persisted as failed
    """
    activation.attempts += 1
    activation.last_checked_at = now

    if activation.attempts >= activation.max_attempts:
        reason = reason_template.format(n=activation.attempts)
        await _fail(db, activation, reason, now)
        raise ExhaustedRetries(activation.hostname, reason)

    activation.next_check_at = policy.next_check(now, activation.attempts)
    await _persist(db)
    logger.info(
        f"Activation {activation.id} still {activation.state} "
        f"(attempt {activation.attempts}/{activation.max_attempts}), "
        f"next check at {activation.next_check_at.isoformat()}"
    )


async def _step_requested(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime,
) -> None:
    try:
        result = await providers.edge.create_custom_hostname(
            activation.hostname,
            owner_tag=str(activation.id),
        )
    except NonRetryableProviderError as e:
        await _fail(db, activation, e.message, now)
        return
    except TransientProviderError as e:
        logger.warning(f"Custom hostname create for {activation.hostname} failed: {e}")
        await _record_unsuccessful(
            db, activation, policy, now, EXHAUSTED_REASONS[ActivationState.REQUESTED],
        )
        return

    activation.edge_hostname_ref = result.edge_hostname_ref
    # Instructions are issued once; a retried create never replaces them
    if activation.dns_instructions is None:
        activation.dns_instructions = [r.model_dump() for r in result.dns_instructions]
    await _advance_to(db, activation, ActivationState.AWAITING_DNS, now)


async def _publish_records(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime,
) -> None:
    """Push the instructions through the registrar for purchased domains."""
    try:
        await providers.registrar.set_host_records(
            registrable_domain(activation.hostname),
            instructions_of(activation),
        )
    except TransientProviderError as e:
        logger.warning(f"Host records for {activation.hostname} not written: {e}")
        await _record_unsuccessful(db, activation, policy, now, DNS_PUBLISH_REASON)
        return
    except NonRetryableProviderError as e:
        await _fail(db, activation, e.message, now)
        return

    activation.dns_records_published_at = now
    activation.last_checked_at = now
    activation.next_check_at = now
    await _persist(db)
    logger.info(f"Host records published for {activation.hostname}")


async def _step_awaiting_dns(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime,
) -> None:
    if activation.registrar_managed and activation.dns_records_published_at is None:
        await _publish_records(db, activation, providers, policy, now)
        return

    observation = await providers.dns.observe(instructions_of(activation))
    if observation == DnsObservation.OBSERVED:
        activation.certificate_status = None
        activation.certificate_cycles = 0
        await _advance_to(db, activation, ActivationState.AWAITING_CERTIFICATE, now)
        return

    await _record_unsuccessful(
        db, activation, policy, now, EXHAUSTED_REASONS[ActivationState.AWAITING_DNS],
    )


async def _billing_blocks_serving(db: AsyncSession, site_id: str, now: datetime) -> bool:
    """
    Read the site's billing on the way to live.

    The billing row is written too, so a payment event applied concurrently
    from an older read fails its version check instead of missing this row.
    """
    billing = await db.get(BillingState, site_id, populate_existing=True)
    if billing is None:
        return True
    billing.updated_at = now
    flag_modified(billing, "updated_at")
    return not billing.allows_custom_domain


async def _step_awaiting_certificate(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime,
) -> None:
    status = await providers.edge.get_certificate_status(activation.edge_hostname_ref)
    exhausted_reason = EXHAUSTED_REASONS[ActivationState.AWAITING_CERTIFICATE]

    if status == CertificateStatus.UNKNOWN:
        await _record_unsuccessful(db, activation, policy, now, exhausted_reason)
        return

    previous = (
        CertificateStatus(activation.certificate_status)
        if activation.certificate_status
        else None
    )

    if previous is not None and status.rank < previous.rank:
        # Regression: start a new attempt cycle instead of overwriting silently
        activation.certificate_cycles += 1
        logger.warning(
            f"Certificate for {activation.hostname} regressed "
            f"{previous.value} -> {status.value} (cycle {activation.certificate_cycles})"
        )
        if activation.certificate_cycles > policy.max_certificate_cycles:
            await _fail(db, activation, CERTIFICATE_REGRESSION_REASON, now)
            return
        try:
            await providers.edge.refresh_certificate(activation.edge_hostname_ref)
        except ProviderError as e:
            logger.warning(f"Certificate refresh for {activation.hostname} failed: {e}")
        activation.certificate_status = status.value
        activation.attempts = 0
        activation.last_checked_at = now
        activation.next_check_at = policy.next_check(now, 1)
        await _persist(db)
        return

    activation.certificate_status = status.value

    if status == CertificateStatus.ACTIVE:
        activation.state = ActivationState.LIVE.value
        activation.attempts = 0
        activation.last_checked_at = now
        # Live rows are not polled
        activation.next_check_at = None
        # Billing may have changed while provisioning; re-check on arrival
        activation.suspended_by_billing = await _billing_blocks_serving(
            db, activation.site_id, now,
        )
        await _persist(db)
        logger.info(
            f"Activation {activation.id} is live"
            + (" (suspended by billing)" if activation.suspended_by_billing else "")
        )
        return

    await _record_unsuccessful(db, activation, policy, now, exhausted_reason)


STEPS = {
    ActivationState.REQUESTED: _step_requested,
    ActivationState.AWAITING_DNS: _step_awaiting_dns,
    ActivationState.AWAITING_CERTIFICATE: _step_awaiting_certificate,
}


async def advance(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
    now: datetime | None = None,
) -> DomainActivation:
    """
    Run the next step of an activation.

    Teardown requests win over forward progress. Live and terminal rows are
    left untouched.

    Args:
        db: Database session holding ``activation``
        activation: Row to advance
        providers: Registrar, edge and DNS adapters
        policy: Attempt and backoff constants
        now: Clock override

    Returns:
        The same activation, updated in the session

    Raises:
        ExhaustedRetries: The row just failed on its attempt cap
        IdempotencyConflict: Another writer updated the row first
    """
    now = now or utcnow()

    with activation_context(activation.hostname, activation.site_id):
        if activation.is_terminal:
            return activation

        if activation.teardown_requested:
            await teardown(db, activation, providers, now)
            return activation

        state = activation.activation_state
        if state == ActivationState.LIVE:
            return activation

        if activation.attempts >= activation.max_attempts:
            reason = EXHAUSTED_REASONS[state].format(n=activation.attempts)
            await _fail(db, activation, reason, now)
            raise ExhaustedRetries(activation.hostname, reason)

        await STEPS[state](db, activation, providers, policy, now)
        return activation


async def teardown(
    db: AsyncSession,
    activation: DomainActivation,
    providers: ProviderBundle,
    now: datetime | None = None,
) -> DomainActivation:
    """
    Delete provider-side objects best-effort and mark the row removed.

    Provider failures are logged; the row becomes removed regardless.
    """
    now = now or utcnow()
    if activation.state == ActivationState.REMOVED.value:
        return activation

    with activation_context(activation.hostname, activation.site_id):
        edge_ref = activation.edge_hostname_ref
        if edge_ref is None:
            try:
                edge_ref = await providers.edge.find_custom_hostname(
                    activation.hostname,
                    owner_tag=str(activation.id),
                )
            except ProviderError as e:
                logger.error(f"Could not look up custom hostname {activation.hostname}: {e}")

        if edge_ref:
            try:
                await providers.edge.delete_custom_hostname(edge_ref)
            except ProviderError as e:
                logger.error(f"Failed to delete custom hostname {edge_ref}: {e}")

        if activation.registrar_managed and activation.dns_records_published_at:
            try:
                await providers.registrar.remove_host_records(
                    registrable_domain(activation.hostname),
                    instructions_of(activation),
                )
            except ProviderError as e:
                logger.error(f"Failed to remove host records for {activation.hostname}: {e}")

        activation.state = ActivationState.REMOVED.value
        activation.teardown_requested = True
        activation.removed_at = now
        activation.next_check_at = None
        await _persist(db)
        logger.info(f"Activation {activation.id} removed")
        return activation
