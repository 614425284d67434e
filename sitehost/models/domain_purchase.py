"""DomainPurchase model: outcome of a paid domain registration."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from sitehost.database import Base
from sitehost.models.types import UTCDateTime, utcnow


class DomainPurchase(Base):
    """Represents a domain bought through checkout."""

    __tablename__ = "domain_purchases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Checkout session id, one purchase per session
    checkout_session_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )

    site_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    domain: Mapped[str] = mapped_column(String(253), index=True, nullable=False)
    years: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # pending | registered | failed
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    registrar_order_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<DomainPurchase(domain={self.domain}, status={self.status})>"
