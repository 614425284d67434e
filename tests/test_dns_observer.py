"""Tests for the DNS observer."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import dns.exception
import dns.resolver
import pytest

from sitehost.config import Settings
from sitehost.schemas.provider import DnsObservation, DnsRecord
from sitehost.services.dns_observer import DnsResolverObserver

CNAME = DnsRecord(type="CNAME", name="shop.example.com", value="edge.svc")
TXT = DnsRecord(type="TXT", name="_cf-custom-hostname.shop.example.com", value="token-123")


def _cname(target: str):
    return SimpleNamespace(target=SimpleNamespace(to_text=lambda: target))


def _txt(value: str):
    return SimpleNamespace(strings=[value.encode("utf-8")])


@pytest.fixture
def observer() -> DnsResolverObserver:
    observer = DnsResolverObserver(Settings())
    observer.resolver = SimpleNamespace(resolve=AsyncMock())
    return observer


class TestObserve:
    async def test_all_records_match(self, observer):
        observer.resolver.resolve.side_effect = [[_cname("Edge.svc.")], [_txt("token-123")]]

        assert await observer.observe([CNAME, TXT]) == DnsObservation.OBSERVED
        observer.resolver.resolve.assert_any_await("shop.example.com", "CNAME")

    async def test_wrong_target_is_not_observed(self, observer):
        observer.resolver.resolve.return_value = [_cname("elsewhere.net.")]

        assert await observer.observe([CNAME]) == DnsObservation.NOT_OBSERVED

    @pytest.mark.parametrize("error", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
    async def test_missing_record_is_not_observed(self, observer, error):
        observer.resolver.resolve.side_effect = error

        assert await observer.observe([CNAME]) == DnsObservation.NOT_OBSERVED

    async def test_resolver_failure_is_unknown(self, observer):
        observer.resolver.resolve.side_effect = dns.exception.Timeout()

        assert await observer.observe([CNAME]) == DnsObservation.UNKNOWN

    async def test_stops_at_first_missing_record(self, observer):
        observer.resolver.resolve.side_effect = [[_cname("edge.svc.")], dns.resolver.NXDOMAIN()]

        assert await observer.observe([CNAME, TXT]) == DnsObservation.NOT_OBSERVED
        assert observer.resolver.resolve.await_count == 2
