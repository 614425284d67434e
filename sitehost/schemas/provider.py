"""Typed results returned by the provider adapters."""

from enum import Enum

from pydantic import BaseModel, Field


class DnsRecord(BaseModel):
    """A single DNS record the hostname must publish."""

    type: str = Field(..., description="DNS record type (CNAME or TXT)")
    name: str = Field(..., description="Fully-qualified record name")
    value: str = Field(..., description="Record value")
    ttl: int = Field(default=1800, description="TTL used when pushed through the registrar")


class CustomHostnameResult(BaseModel):
    """Edge provider custom hostname plus the records that route and validate it."""

    edge_hostname_ref: str
    dns_instructions: list[DnsRecord]


class DnsObservation(str, Enum):
    """Outcome of looking up the expected records."""

    OBSERVED = "observed"
    NOT_OBSERVED = "not_observed"
    UNKNOWN = "unknown"


class DomainAvailability(BaseModel):
    """Registrar availability for one name."""

    name: str
    available: bool
    premium: bool = False
    premium_price: float | None = None


class RegistrantContact(BaseModel):
    """Contact used for registrant, admin, tech and billing roles."""

    first_name: str
    last_name: str
    address1: str
    city: str
    state_province: str
    postal_code: str
    country: str
    phone: str
    email: str
    organization: str | None = None


class RegistrationResult(BaseModel):
    """A completed registration."""

    domain: str
    order_ref: str
    transaction_id: str | None = None
    charged_amount: float | None = None


class TldPricing(BaseModel):
    """Registration price of one TLD."""

    tld: str = Field(..., description="TLD with leading dot, e.g. .com")
    register_price: float
    currency: str = "USD"
