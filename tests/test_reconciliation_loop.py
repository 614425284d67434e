"""Tests for the reconciliation loop."""

import asyncio
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import NOW
from sitehost.models.billing_state import BillingState
from sitehost.models.domain_activation import ActivationState, DomainActivation
from sitehost.schemas.provider import DnsObservation
from sitehost.services.reconciliation_loop import ReconciliationLoop

CNAME = {"type": "CNAME", "name": "shop.example.com", "value": "edge.svc", "ttl": 1800}


async def _seed(
    session_factory: async_sessionmaker[AsyncSession],
    hostname: str = "shop.example.com",
    state: ActivationState = ActivationState.AWAITING_DNS,
    next_check_at=NOW,
    **fields,
) -> DomainActivation:
    async with session_factory() as db:
        activation = DomainActivation(
            site_id="site_1",
            hostname=hostname,
            source="existing",
            state=state.value,
            edge_hostname_ref="eh_1",
            dns_instructions=[CNAME],
            next_check_at=next_check_at,
            **fields,
        )
        db.add(activation)
        await db.commit()
        return activation


async def _load(session_factory, activation_id) -> DomainActivation:
    async with session_factory() as db:
        return await db.get(DomainActivation, activation_id)


def _loop(session_factory, providers, policy) -> ReconciliationLoop:
    # One worker keeps SQLite writes serialized
    return ReconciliationLoop(session_factory, providers, policy, concurrency=1)


class TestTick:
    async def test_processes_only_due_non_terminal_rows(self, session_factory, providers, policy):
        due = await _seed(session_factory, "due.example.com")
        later = await _seed(session_factory, "later.example.com", next_check_at=NOW + timedelta(minutes=5))
        failed = await _seed(session_factory, "failed.example.com", state=ActivationState.FAILED)
        live = await _seed(session_factory, "live.example.com", state=ActivationState.LIVE)

        report = await _loop(session_factory, providers, policy).tick(NOW)

        assert report.selected == 1
        assert set(report.outcomes) == {due.id}
        assert (await _load(session_factory, due.id)).state == ActivationState.AWAITING_CERTIFICATE.value
        assert (await _load(session_factory, later.id)).state == ActivationState.AWAITING_DNS.value
        assert (await _load(session_factory, failed.id)).state == ActivationState.FAILED.value
        assert (await _load(session_factory, live.id)).state == ActivationState.LIVE.value

    async def test_unobserved_dns_backs_off(self, session_factory, providers, policy):
        providers.dns.observe.return_value = DnsObservation.NOT_OBSERVED
        activation = await _seed(session_factory)

        await _loop(session_factory, providers, policy).tick(NOW)

        row = await _load(session_factory, activation.id)
        assert row.attempts == 1
        assert row.last_checked_at == NOW
        assert row.next_check_at == NOW + timedelta(seconds=60)

    async def test_exhausted_row_stops_polling(self, session_factory, providers, policy):
        providers.dns.observe.return_value = DnsObservation.NOT_OBSERVED
        activation = await _seed(session_factory, attempts=9)
        loop = _loop(session_factory, providers, policy)

        report = await loop.tick(NOW)

        assert report.exhausted == 1
        row = await _load(session_factory, activation.id)
        assert row.state == ActivationState.FAILED.value
        assert row.failure_reason == "DNS validation not observed after 10 attempts"
        assert row.next_check_at is None

        again = await loop.tick(NOW + timedelta(days=1))
        assert again.selected == 0

    async def test_error_in_one_row_does_not_block_others(self, session_factory, providers, policy):
        first = await _seed(session_factory, "first.example.com")
        second = await _seed(session_factory, "second.example.com", next_check_at=NOW - timedelta(seconds=1))
        providers.dns.observe.side_effect = [RuntimeError("resolver exploded"), DnsObservation.OBSERVED]

        report = await _loop(session_factory, providers, policy).tick(NOW)

        assert report.errors == 1
        assert report.advanced == 1
        # Oldest due row runs first
        assert report.outcomes[second.id] == "error"
        assert report.outcomes[first.id] == "advanced"

        errored = await _load(session_factory, second.id)
        assert errored.state == ActivationState.AWAITING_DNS.value
        assert errored.attempts == 0
        assert errored.next_check_at == NOW + timedelta(seconds=policy.retry_bump_seconds)

    async def test_teardown_requested_live_row_is_removed(self, session_factory, providers, policy):
        activation = await _seed(
            session_factory,
            state=ActivationState.LIVE,
            teardown_requested=True,
        )

        await _loop(session_factory, providers, policy).tick(NOW)

        assert (await _load(session_factory, activation.id)).state == ActivationState.REMOVED.value
        providers.edge.delete_custom_hostname.assert_awaited_once_with("eh_1")

    async def test_overlapping_tick_is_skipped(self, session_factory, providers, policy):
        await _seed(session_factory)
        release = asyncio.Event()

        async def slow_observe(records):
            await release.wait()
            return DnsObservation.NOT_OBSERVED

        providers.dns.observe.side_effect = slow_observe
        loop = _loop(session_factory, providers, policy)

        first = asyncio.create_task(loop.tick(NOW))
        while not loop.running:
            await asyncio.sleep(0)

        second = await loop.tick(NOW)
        release.set()
        first_report = await first

        assert second.skipped is True
        assert first_report.selected == 1
        assert providers.dns.observe.await_count == 1

    async def test_full_scenario_reaches_live(self, session_factory, providers, policy):
        async with session_factory() as db:
            db.add(BillingState(
                site_id="site_1",
                subscription_id="sub_1",
                plan="pro",
                status="active",
                plan_allows_custom_domain=True,
            ))
            await db.commit()
        activation = await _seed(session_factory, state=ActivationState.REQUESTED)
        loop = _loop(session_factory, providers, policy)

        for minute in range(3):
            await loop.tick(NOW + timedelta(minutes=minute))

        row = await _load(session_factory, activation.id)
        assert row.state == ActivationState.LIVE.value
        assert row.serving_allowed is True
        assert (await loop.tick(NOW + timedelta(hours=1))).selected == 0
