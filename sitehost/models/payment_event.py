"""PaymentEventRecord model: idempotency ledger for payment webhooks."""

from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sitehost.database import Base
from sitehost.models.types import JSONType, UTCDateTime, utcnow


class PaymentEventRecord(Base):
    """One payment-provider event id and what happened to it."""

    __tablename__ = "payment_events"

    # Provider event id (e.g. evt_...)
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # processed | ignored_stale | failed
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Normalized event, kept so failed events can be replayed
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_payment_events_status_received", "status", "received_at"),)

    def __repr__(self) -> str:
        return f"<PaymentEventRecord(id={self.event_id}, type={self.event_type}, status={self.status})>"
