"""Domain-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sitehost.models.domain_activation import DomainSource
from sitehost.schemas.provider import DnsRecord, DomainAvailability, TldPricing


class RequestDomainRequest(BaseModel):
    """Request schema for attaching a hostname to a site."""

    hostname: str = Field(..., description="Fully-qualified hostname (e.g., shop.example.com)")
    source: DomainSource = Field(
        default=DomainSource.EXISTING,
        description="purchased through us, or an existing domain the user manages",
    )

    @field_validator("hostname")
    @classmethod
    def strip_hostname(cls, v: str) -> str:
        return v.strip().lower()


class DomainActivationResponse(BaseModel):
    """Activation state as shown to the site owner."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: str
    hostname: str
    source: str
    state: str
    failure_reason: str | None
    certificate_status: str | None
    dns_instructions: list[DnsRecord] | None
    dns_records_published_at: datetime | None
    attempts: int
    max_attempts: int
    last_checked_at: datetime | None
    next_check_at: datetime | None
    suspended_by_billing: bool
    serving_allowed: bool
    created_at: datetime
    updated_at: datetime
    removed_at: datetime | None


class DomainListResponse(BaseModel):
    """Response for the site domain list endpoint."""

    items: list[DomainActivationResponse]
    total: int


class ServingResponse(BaseModel):
    """Answer to the edge-routing layer."""

    hostname: str
    site_id: str | None
    allowed: bool


class AvailabilityResponse(BaseModel):
    """Registrar availability for a batch of names."""

    results: list[DomainAvailability]


class PricingResponse(BaseModel):
    """Registration prices for the most relevant TLDs."""

    tlds: list[TldPricing]
