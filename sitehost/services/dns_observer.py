"""Public DNS lookups that decide when published records are visible."""

import logging

import dns.asyncresolver
import dns.exception
import dns.resolver

from sitehost.config import Settings
from sitehost.schemas.provider import DnsObservation, DnsRecord

logger = logging.getLogger(__name__)


def _normalize(value: str) -> str:
    return value.strip().strip('"').rstrip(".").lower()


class DnsResolverObserver:
    """Resolve each instruction record and compare it with the expected value."""

    def __init__(self, settings: Settings, nameservers: list[str] | None = None):
        self.resolver = dns.asyncresolver.Resolver()
        self.resolver.lifetime = settings.PROVIDER_TIMEOUT_SECONDS
        if nameservers:
            self.resolver.nameservers = nameservers

    async def _lookup(self, record: DnsRecord) -> list[str]:
        answers = await self.resolver.resolve(record.name, record.type.upper())
        if record.type.upper() == "TXT":
            return [
                _normalize(b"".join(rdata.strings).decode("utf-8", errors="replace"))
                for rdata in answers
            ]
        if record.type.upper() == "CNAME":
            return [_normalize(rdata.target.to_text()) for rdata in answers]
        return [_normalize(rdata.to_text()) for rdata in answers]

    async def observe(self, records: list[DnsRecord]) -> DnsObservation:
        """
        Check that every record is published with the expected value.

        Returns:
            OBSERVED when all match, NOT_OBSERVED when any is missing or
            different, UNKNOWN when the resolver itself failed
        """
        for record in records:
            try:
                values = await self._lookup(record)
            except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
                logger.info(f"{record.type} {record.name} not published yet")
                return DnsObservation.NOT_OBSERVED
            except (dns.resolver.NoNameservers, dns.exception.Timeout) as e:
                logger.warning(f"DNS lookup for {record.name} failed: {e}")
                return DnsObservation.UNKNOWN
            except dns.exception.DNSException as e:
                logger.warning(f"DNS lookup for {record.name} errored: {e}")
                return DnsObservation.UNKNOWN

            if _normalize(record.value) not in values:
                logger.info(
                    f"{record.type} {record.name} resolves to {values}, "
                    f"expected {record.value}"
                )
                return DnsObservation.NOT_OBSERVED

        return DnsObservation.OBSERVED
