"""BillingState model: subscription state that gates custom domains."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sitehost.database import Base
from sitehost.models.types import UTCDateTime, utcnow


class BillingState(Base):
    """Represents the subscription state of one site."""

    __tablename__ = "billing_states"

    site_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Stripe references
    subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=True,
    )
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan and status
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    plan_allows_custom_domain: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # Ordering key of the newest applied event
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def allows_custom_domain(self) -> bool:
        return self.status == "active" and self.plan_allows_custom_domain

    def __repr__(self) -> str:
        return f"<BillingState(site={self.site_id}, plan={self.plan}, status={self.status})>"
