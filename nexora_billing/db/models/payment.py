"""Payment model: one row per provider charge attempt."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from nexora_billing.db.base import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=True, index=True)

    # Payment intent id, or the checkout session id when the session has no intent
    provider_payment_id = Column(String(255), nullable=False, unique=True)
    provider_customer_id = Column(String(255), nullable=True, index=True)
    checkout_session_id = Column(String(255), nullable=True, index=True)

    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending")

    plan = Column(String(20), nullable=True)
    billing_cycle = Column(String(20), nullable=False, default="one_time")
    payment_method = Column(String(50), nullable=True)
    tax_amount = Column(Integer, nullable=False, default=0)
    discount_amount = Column(Integer, nullable=False, default=0)

    flagged_for_review = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
