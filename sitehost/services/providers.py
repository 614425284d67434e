"""Provider adapter interfaces and the bundle handed to the core services."""

from dataclasses import dataclass
from typing import Protocol

from sitehost.models.domain_activation import CertificateStatus
from sitehost.schemas.provider import (
    CustomHostnameResult,
    DnsObservation,
    DnsRecord,
    DomainAvailability,
    RegistrantContact,
    RegistrationResult,
    TldPricing,
)


class Registrar(Protocol):
    """Domain availability, registration and host records."""

    async def check_availability(self, names: list[str]) -> list[DomainAvailability]: ...

    async def register(
        self,
        name: str,
        years: int,
        contact: RegistrantContact,
    ) -> RegistrationResult: ...

    async def set_host_records(self, name: str, records: list[DnsRecord]) -> None: ...

    async def remove_host_records(self, name: str, records: list[DnsRecord]) -> None: ...

    async def suggest(self, keyword: str) -> list[DomainAvailability]: ...

    async def get_tld_pricing(self) -> list[TldPricing]: ...


class EdgeProvider(Protocol):
    """Custom hostname objects and their certificate lifecycle."""

    async def create_custom_hostname(
        self,
        hostname: str,
        owner_tag: str,
    ) -> CustomHostnameResult: ...

    async def get_certificate_status(self, edge_hostname_ref: str) -> CertificateStatus: ...

    async def refresh_certificate(self, edge_hostname_ref: str) -> None: ...

    async def find_custom_hostname(self, hostname: str, owner_tag: str) -> str | None: ...

    async def delete_custom_hostname(self, edge_hostname_ref: str) -> None: ...


class DnsObserver(Protocol):
    """Looks up whether published records match the instructions."""

    async def observe(self, records: list[DnsRecord]) -> DnsObservation: ...


@dataclass(frozen=True)
class ProviderBundle:
    """Everything the state machine is allowed to call out to."""

    registrar: Registrar
    edge: EdgeProvider
    dns: DnsObserver
