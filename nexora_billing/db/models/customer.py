"""Customer model: local mirror of a provider customer, keyed by its provider id."""

from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from nexora_billing.db.base import Base


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_customer_id = Column(String(255), nullable=False, unique=True)
    user_id = Column(String(255), nullable=True, index=True)
    email = Column(String(255), nullable=False, default="")
    name = Column(String(255), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    # Set when the provider deletes the customer; the row is kept as history
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
