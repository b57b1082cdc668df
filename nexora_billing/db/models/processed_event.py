"""ProcessedWebhookEvent model: the idempotency ledger."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from nexora_billing.db.base import Base


class ProcessedWebhookEvent(Base):
    """One row per provider event id. Once status is "processed" the row is never rewritten."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="received", index=True)

    processing_time_ms = Column(Integer, nullable=True)
    actions = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    delivery_count = Column(Integer, nullable=False, default=1)

    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
