"""Payment persistence keyed by provider payment id."""

import structlog
from sqlalchemy import select, update

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.payment import Payment
from nexora_billing.repositories.base import upsert_statement, utcnow

logger = structlog.get_logger(__name__)


class PaymentRepository:
    async def get_by_provider_id(self, provider_payment_id: str) -> Payment | None:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Payment).where(Payment.provider_payment_id == provider_payment_id)
            )
            return result.scalar_one_or_none()

    async def get_by_checkout_session(self, checkout_session_id: str) -> Payment | None:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.checkout_session_id == checkout_session_id)
                .order_by(Payment.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def upsert(self, provider_payment_id: str, **fields) -> Payment:
        """Insert or update the payment row for provider_payment_id.

        Fields passed as None are left out of the statement, so a later event
        that omits them never clears what an earlier one recorded.
        """
        values = {k: v for k, v in fields.items() if v is not None}
        values["provider_payment_id"] = provider_payment_id
        values["updated_at"] = utcnow()

        async with get_session_factory()() as session:
            update_columns = [k for k in values if k != "provider_payment_id"]

            stmt = upsert_statement(
                session,
                Payment.__table__,
                values,
                index_elements=["provider_payment_id"],
                update_columns=update_columns,
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Payment)
                .where(Payment.provider_payment_id == provider_payment_id)
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one()

        logger.info(
            "payment_upserted",
            provider_payment_id=provider_payment_id,
            status=payment.status,
            user_id=payment.user_id,
        )
        return payment

    async def update_fields(self, provider_payment_id: str, **fields) -> bool:
        """Update selected columns on an existing payment. Returns False if no row matched."""
        fields["updated_at"] = utcnow()
        async with get_session_factory()() as session:
            result = await session.execute(
                update(Payment).where(Payment.provider_payment_id == provider_payment_id).values(**fields)
            )
            await session.commit()
            return result.rowcount == 1
