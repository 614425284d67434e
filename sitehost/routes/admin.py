"""Operator routes: replay failed payment events, run a reconciliation tick."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitehost.database import get_session_factory
from sitehost.dependencies import (
    get_policy,
    get_providers,
    get_reconciliation_loop,
    require_auth,
)
from sitehost.schemas.webhook import ReconcileResponse, ReplayResponse
from sitehost.services.billing_reconciler import replay_failed_events
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle
from sitehost.services.reconciliation_loop import ReconciliationLoop

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_auth)])


@router.post("/admin/payment-events/replay", response_model=ReplayResponse)
async def replay_payment_events(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    providers: ProviderBundle = Depends(get_providers),
    policy: ProvisioningPolicy = Depends(get_policy),
) -> ReplayResponse:
    """Reprocess every payment event recorded as failed, oldest first."""
    outcomes = await replay_failed_events(session_factory, providers, policy)
    logger.info(f"Replayed failed payment events: {outcomes}")
    return ReplayResponse(replayed=sum(outcomes.values()), outcomes=outcomes)


@router.post("/admin/reconcile", response_model=ReconcileResponse)
async def reconcile_now(
    loop: ReconciliationLoop = Depends(get_reconciliation_loop),
) -> ReconcileResponse:
    """Run one reconciliation tick now; skipped if one is already running."""
    report = await loop.tick()
    return ReconcileResponse(
        skipped=report.skipped,
        selected=report.selected,
        advanced=report.advanced,
        exhausted=report.exhausted,
        conflicts=report.conflicts,
        errors=report.errors,
    )
