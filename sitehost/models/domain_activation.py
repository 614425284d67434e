"""DomainActivation model: one custom-domain attachment of a site."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from sitehost.database import Base
from sitehost.models.types import JSONType, UTCDateTime, utcnow


class ActivationState(str, Enum):
    """Coarse lifecycle state of an activation."""

    REQUESTED = "requested"
    AWAITING_DNS = "awaiting_dns"
    AWAITING_CERTIFICATE = "awaiting_certificate"
    LIVE = "live"
    FAILED = "failed"
    REMOVED = "removed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ActivationState.FAILED, ActivationState.REMOVED})

# States the reconciliation loop keeps polling. LIVE is quiescent.
POLLED_STATES = (
    ActivationState.REQUESTED,
    ActivationState.AWAITING_DNS,
    ActivationState.AWAITING_CERTIFICATE,
)


class CertificateStatus(str, Enum):
    """Provider-reported certificate sub-state."""

    INITIALIZING = "initializing"
    PENDING_VALIDATION = "pending_validation"
    PENDING_ISSUANCE = "pending_issuance"
    ACTIVE = "active"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _CERTIFICATE_RANK.get(self, -1)


_CERTIFICATE_RANK = {
    CertificateStatus.INITIALIZING: 0,
    CertificateStatus.PENDING_VALIDATION: 1,
    CertificateStatus.PENDING_ISSUANCE: 2,
    CertificateStatus.ACTIVE: 3,
}


class DomainSource(str, Enum):
    """Where the hostname came from."""

    PURCHASED = "purchased"
    EXISTING = "existing"


class DomainActivation(Base):
    """Represents one (site, hostname) custom-domain attachment."""

    __tablename__ = "domain_activations"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity
    site_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    hostname: Mapped[str] = mapped_column(String(253), index=True, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    # Lifecycle
    state: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ActivationState.REQUESTED.value,
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    teardown_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Provider references
    registrar_order_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    edge_hostname_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # DNS records the hostname must publish; written once on entering awaiting_dns
    dns_instructions: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    dns_records_published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Certificate sub-state and re-entry counter
    certificate_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    certificate_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Polling
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_check_at: Mapped[datetime | None] = mapped_column(UTCDateTime, index=True, nullable=True)

    # Billing gate, owned by the billing reconciler
    suspended_by_billing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    removed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    # At most one non-terminal activation per hostname
    __table_args__ = (
        Index(
            "uq_domain_activations_open_hostname",
            "hostname",
            unique=True,
            postgresql_where=text("state NOT IN ('failed', 'removed')"),
            sqlite_where=text("state NOT IN ('failed', 'removed')"),
        ),
        Index("ix_domain_activations_site_hostname", "site_id", "hostname"),
    )

    @property
    def activation_state(self) -> ActivationState:
        return ActivationState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.activation_state.is_terminal

    @property
    def registrar_managed(self) -> bool:
        """DNS for purchased domains is pushed through the registrar."""
        return self.source == DomainSource.PURCHASED.value

    @property
    def serving_allowed(self) -> bool:
        return self.state == ActivationState.LIVE.value and not self.suspended_by_billing

    def __repr__(self) -> str:
        return (
            f"<DomainActivation(hostname={self.hostname}, site={self.site_id}, "
            f"state={self.state})>"
        )
