"""UserEntitlement model: plan, image credits and storage quota held by a user."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from nexora_billing.db.base import Base


class UserEntitlement(Base):
    __tablename__ = "user_entitlements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, unique=True)
    plan = Column(String(20), nullable=False, default="free")
    credits = Column(Integer, nullable=False, default=1)  # -1 = unlimited
    storage_mb = Column(Integer, nullable=False, default=100)  # -1 = unlimited

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
