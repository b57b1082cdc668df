"""Customer persistence keyed by provider customer id."""

import structlog
from sqlalchemy import select, update

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.customer import Customer
from nexora_billing.repositories.base import upsert_statement, utcnow

logger = structlog.get_logger(__name__)


class CustomerRepository:
    async def get_by_provider_id(self, provider_customer_id: str) -> Customer | None:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Customer).where(Customer.provider_customer_id == provider_customer_id)
            )
            return result.scalar_one_or_none()

    async def upsert(self, provider_customer_id: str, **fields) -> Customer:
        """Insert or refresh the mirror row. None fields keep their stored value."""
        values = {k: v for k, v in fields.items() if v is not None}
        values["provider_customer_id"] = provider_customer_id
        values["updated_at"] = utcnow()
        values.setdefault("email", "")

        # An email missing from this snapshot must not blank a stored one
        update_columns = [
            k for k in values if k != "provider_customer_id" and not (k == "email" and not values[k])
        ]

        async with get_session_factory()() as session:
            stmt = upsert_statement(
                session,
                Customer.__table__,
                values,
                index_elements=["provider_customer_id"],
                update_columns=update_columns,
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Customer)
                .where(Customer.provider_customer_id == provider_customer_id)
                .execution_options(populate_existing=True)
            )
            customer = result.scalar_one()

        logger.info("customer_upserted", provider_customer_id=provider_customer_id, user_id=customer.user_id)
        return customer

    async def mark_deleted(self, provider_customer_id: str) -> bool:
        """Soft-delete. Returns False if the customer was never mirrored."""
        async with get_session_factory()() as session:
            result = await session.execute(
                update(Customer)
                .where(Customer.provider_customer_id == provider_customer_id)
                .values(deleted_at=utcnow(), updated_at=utcnow())
            )
            await session.commit()
            return result.rowcount == 1
