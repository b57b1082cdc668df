"""Analytics sink: product analytics rows plus CloudWatch business metrics."""

import structlog

from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.audit_log import AnalyticsEvent
from nexora_billing.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)


class AnalyticsSink:
    """Fire-and-forget: failures are logged, never raised."""

    async def track(self, event: str, user_id: str | None = None, **properties) -> None:
        try:
            async with get_session_factory()() as session:
                session.add(AnalyticsEvent(event=event, user_id=user_id, metadata_=properties))
                await session.commit()
        except Exception as e:
            logger.warning("analytics_write_failed", analytics_event=event, error=str(e), error_type=type(e).__name__)
            return

        await emit_business_event(event)

    async def track_revenue(self, user_id: str | None, amount: int, currency: str, **properties) -> None:
        """Record collected revenue (minor units) as both an analytics row and a metric."""
        await self.track("revenue", user_id=user_id, amount=amount, currency=currency, **properties)
        await emit_business_event("RevenueCents", value=float(amount), unit="None")
