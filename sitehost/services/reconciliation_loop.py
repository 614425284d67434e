"""
Reconciliation loop.

Each tick selects activations that are due, advances each one in its own
session, and bounds the work with a semaphore. Ticks never overlap: a tick
that starts while another is running is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from sitehost.models.domain_activation import (
    POLLED_STATES,
    ActivationState,
    DomainActivation,
)
from sitehost.models.types import utcnow
from sitehost.services.activation_machine import advance
from sitehost.services.errors import ExhaustedRetries, IdempotencyConflict
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one tick did."""

    skipped: bool = False
    selected: int = 0
    advanced: int = 0
    exhausted: int = 0
    conflicts: int = 0
    errors: int = 0
    outcomes: dict[UUID, str] = field(default_factory=dict)


class ReconciliationLoop:
    """Periodic driver of non-terminal activations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderBundle,
        policy: ProvisioningPolicy,
        concurrency: int = 8,
        batch_size: int = 200,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.policy = policy
        self.concurrency = max(concurrency, 1)
        self.batch_size = batch_size
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def _due_ids(self, now: datetime) -> list[UUID]:
        polled = [s.value for s in POLLED_STATES]
        async with self.session_factory() as db:
            result = await db.execute(
                select(DomainActivation.id)
                .where(
                    DomainActivation.state != ActivationState.REMOVED.value,
                    DomainActivation.state != ActivationState.FAILED.value,
                    or_(
                        DomainActivation.state.in_(polled),
                        DomainActivation.teardown_requested.is_(True),
                    ),
                    DomainActivation.next_check_at.is_not(None),
                    DomainActivation.next_check_at <= now,
                )
                .order_by(DomainActivation.next_check_at)
                .limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _bump(self, activation_id: UUID, version: int | None, now: datetime) -> None:
        """Push an errored row to the next tick without touching anything else."""
        if version is None:
            return
        async with self.session_factory() as db:
            result = await db.execute(
                update(DomainActivation)
                .where(
                    DomainActivation.id == activation_id,
                    DomainActivation.version == version,
                )
                .values(
                    next_check_at=self.policy.retry_bump(now),
                    version=version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 0:
                logger.info(f"Activation {activation_id} changed before its retry bump")

    async def _process(self, activation_id: UUID, now: datetime) -> str:
        """Advance one row in its own transaction. Never raises."""
        version: int | None = None
        try:
            async with self.session_factory() as db:
                activation = await db.get(DomainActivation, activation_id)
                if activation is None:
                    return "missing"
                version = activation.version
                try:
                    await advance(db, activation, self.providers, self.policy, now)
                    await db.commit()
                    return "advanced"
                except ExhaustedRetries as e:
                    await db.commit()
                    logger.warning(f"Activation for {e.hostname} exhausted: {e.reason}")
                    return "exhausted"
                except (IdempotencyConflict, StaleDataError):
                    await db.rollback()
                    logger.info(f"Activation {activation_id} changed concurrently; retrying next tick")
                    return "conflict"
        except Exception as e:
            logger.error(f"Error processing activation {activation_id}: {e}", exc_info=True)
            try:
                await self._bump(activation_id, version, now)
            except Exception as bump_error:
                logger.error(f"Retry bump for {activation_id} failed: {bump_error}")
            return "error"

    async def tick(self, now: datetime | None = None) -> TickReport:
        """
        Run one reconciliation pass.

        Returns:
            A report of what was processed; ``skipped`` if a tick was running
        """
        if self._lock.locked():
            logger.info("Reconciliation tick still running, skipping")
            return TickReport(skipped=True)

        async with self._lock:
            now = now or utcnow()
            ids = await self._due_ids(now)
            report = TickReport(selected=len(ids))
            if not ids:
                return report

            semaphore = asyncio.Semaphore(self.concurrency)

            async def run(activation_id: UUID) -> tuple[UUID, str]:
                async with semaphore:
                    return activation_id, await self._process(activation_id, now)

            for activation_id, outcome in await asyncio.gather(*(run(i) for i in ids)):
                report.outcomes[activation_id] = outcome
                if outcome == "advanced":
                    report.advanced += 1
                elif outcome == "exhausted":
                    report.exhausted += 1
                elif outcome == "conflict":
                    report.conflicts += 1
                elif outcome == "error":
                    report.errors += 1

            logger.info(
                f"Reconciliation tick: {report.selected} due, {report.advanced} advanced, "
                f"{report.exhausted} exhausted, {report.conflicts} conflicts, "
                f"{report.errors} errors"
            )
            return report
