"""Subscription persistence: one row per user, upserted by user_id."""

import structlog
from sqlalchemy import select, update

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.subscription import Subscription
from nexora_billing.repositories.base import upsert_statement, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionRepository:
    async def get_by_user_id(self, user_id: str) -> Subscription | None:
        async with get_session_factory()() as session:
            result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
            return result.scalar_one_or_none()

    async def get_by_provider_id(self, provider_subscription_id: str) -> Subscription | None:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
            )
            return result.scalar_one_or_none()

    async def get_by_customer_id(self, provider_customer_id: str) -> Subscription | None:
        """Most recently updated subscription for a provider customer."""
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.provider_customer_id == provider_customer_id)
                .order_by(Subscription.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find(self, provider_subscription_id: str | None, provider_customer_id: str | None) -> Subscription | None:
        """Look up by subscription id first, then fall back to the customer id."""
        if provider_subscription_id:
            subscription = await self.get_by_provider_id(provider_subscription_id)
            if subscription is not None:
                return subscription
        if provider_customer_id:
            return await self.get_by_customer_id(provider_customer_id)
        return None

    async def upsert_for_user(self, user_id: str, **fields) -> Subscription:
        """Insert or replace the user's subscription row (ON CONFLICT (user_id))."""
        now = utcnow()
        values = {"user_id": user_id, **fields, "updated_at": now}
        update_columns = [k for k in values if k != "user_id"]

        async with get_session_factory()() as session:
            stmt = upsert_statement(
                session,
                Subscription.__table__,
                values,
                index_elements=["user_id"],
                update_columns=update_columns,
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            subscription = result.scalar_one()

        logger.info(
            "subscription_upserted",
            user_id=user_id,
            provider_subscription_id=subscription.provider_subscription_id,
            status=subscription.status,
        )
        return subscription

    async def update_fields(self, subscription_id: int, **fields) -> None:
        """Update only the given columns (plus updated_at) on one row."""
        fields["updated_at"] = utcnow()
        async with get_session_factory()() as session:
            await session.execute(update(Subscription).where(Subscription.id == subscription_id).values(**fields))
            await session.commit()
