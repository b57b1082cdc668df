"""User entitlement persistence: the plan, credits and storage a user holds."""

import structlog
from sqlalchemy import select

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.entitlement import UserEntitlement
from nexora_billing.domain.enums import Plan
from nexora_billing.domain.plans import PLAN_CREDITS, PLAN_STORAGE_MB
from nexora_billing.repositories.base import upsert_statement, utcnow

logger = structlog.get_logger(__name__)


class EntitlementRepository:
    async def get(self, user_id: str) -> UserEntitlement | None:
        async with get_session_factory()() as session:
            result = await session.execute(select(UserEntitlement).where(UserEntitlement.user_id == user_id))
            return result.scalar_one_or_none()

    async def set_plan(self, user_id: str, plan: Plan) -> UserEntitlement:
        """Grant a plan's quotas.

        Values are absolute (not incremented) so re-applying the same grant
        from a second event type converges to the same row.
        """
        values = {
            "user_id": user_id,
            "plan": plan.value,
            "credits": PLAN_CREDITS[plan],
            "storage_mb": PLAN_STORAGE_MB[plan],
            "updated_at": utcnow(),
        }
        async with get_session_factory()() as session:
            stmt = upsert_statement(
                session,
                UserEntitlement.__table__,
                values,
                index_elements=["user_id"],
                update_columns=["plan", "credits", "storage_mb", "updated_at"],
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(UserEntitlement)
                .where(UserEntitlement.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            entitlement = result.scalar_one()

        logger.info("entitlement_updated", user_id=user_id, plan=plan.value, credits=entitlement.credits)
        return entitlement
