"""Test fixtures for the sitehost domains test suite."""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set test environment variables BEFORE importing sitehost modules
os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite:///./sitehost-test.db",
    "CLOUDFLARE_API_TOKEN": "test-cf-token",
    "CLOUDFLARE_ZONE_ID": "zone123",
    "CLOUDFLARE_CNAME_TARGET": "edge.svc",
    "NAMECHEAP_API_USER": "testuser",
    "NAMECHEAP_API_KEY": "test-nc-key",
    "NAMECHEAP_USERNAME": "testuser",
    "NAMECHEAP_CLIENT_IP": "127.0.0.1",
    "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
    "STRIPE_PRICE_MONTHLY": "price_monthly",
    "STRIPE_PRICE_STARTER": "price_starter",
    "STRIPE_PRICE_BIENNIAL": "price_biennial",
    "SCHEDULER_ENABLED": "false",
    "AUTH_USERNAME": "admin",
    "AUTH_PASSWORD": "secret",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "WARNING",
})

import sitehost.models  # noqa: E402,F401
from sitehost.database import (  # noqa: E402
    Base,
    build_engine,
    build_session_factory,
    get_session,
    get_session_factory,
)
from sitehost.dependencies import (  # noqa: E402
    get_policy,
    get_providers,
    get_reconciliation_loop,
)
from sitehost.main import create_app  # noqa: E402
from sitehost.models.billing_state import BillingState  # noqa: E402
from sitehost.models.domain_activation import CertificateStatus  # noqa: E402
from sitehost.schemas.provider import (  # noqa: E402
    CustomHostnameResult,
    DnsObservation,
    DnsRecord,
    RegistrationResult,
)
from sitehost.services.policy import ProvisioningPolicy  # noqa: E402
from sitehost.services.providers import ProviderBundle  # noqa: E402
from sitehost.services.reconciliation_loop import ReconciliationLoop  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """A throwaway SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sitehost.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session; tables vanish with the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy() -> ProvisioningPolicy:
    return ProvisioningPolicy()


@pytest.fixture
def providers() -> ProviderBundle:
    """Mock adapters that succeed at every step."""
    registrar = AsyncMock()
    registrar.set_host_records.return_value = None
    registrar.remove_host_records.return_value = None
    registrar.register.return_value = RegistrationResult(
        domain="example.com",
        order_ref="order-123",
        transaction_id="txn-1",
        charged_amount=12.98,
    )
    registrar.check_availability.return_value = []
    registrar.suggest.return_value = []
    registrar.get_tld_pricing.return_value = []

    edge = AsyncMock()
    edge.create_custom_hostname.return_value = CustomHostnameResult(
        edge_hostname_ref="eh_1",
        dns_instructions=[DnsRecord(type="CNAME", name="shop.example.com", value="edge.svc")],
    )
    edge.get_certificate_status.return_value = CertificateStatus.ACTIVE
    edge.find_custom_hostname.return_value = None
    edge.refresh_certificate.return_value = None
    edge.delete_custom_hostname.return_value = None

    dns = AsyncMock()
    dns.observe.return_value = DnsObservation.OBSERVED

    return ProviderBundle(registrar=registrar, edge=edge, dns=dns)


@pytest.fixture
def make_billing(db: AsyncSession) -> Callable[..., Awaitable[BillingState]]:
    """Factory for a site's billing row (pro and active by default)."""

    async def _make(
        site_id: str = "site_1",
        plan: str = "pro",
        status: str = "active",
        subscription_id: str | None = None,
        period_end: datetime | None = None,
        last_event_at: datetime | None = None,
    ) -> BillingState:
        billing = BillingState(
            site_id=site_id,
            subscription_id=subscription_id or f"sub_{site_id}",
            plan=plan,
            status=status,
            plan_allows_custom_domain=plan in ("pro", "enterprise"),
            period_end=period_end,
            last_event_at=last_event_at,
        )
        db.add(billing)
        await db.commit()
        return billing

    return _make


@pytest.fixture
async def client(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    providers: ProviderBundle,
    policy: ProvisioningPolicy,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client with database and provider overrides."""
    app = create_app()

    async def override_get_session():
        yield db

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_providers] = lambda: providers
    app.dependency_overrides[get_policy] = lambda: policy
    app.dependency_overrides[get_reconciliation_loop] = lambda: ReconciliationLoop(
        session_factory, providers, policy, concurrency=1,
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
