"""Customer notifications (email delivery is not wired up; logged only)."""

import structlog

logger = structlog.get_logger(__name__)


class NotificationService:
    async def notify(self, template: str, user_id: str | None = None, **context) -> None:
        # Mocked transport: the structured log line stands in for the email
        logger.info("customer_notification_queued", template=template, user_id=user_id, **context)

    async def payment_failed(self, user_id: str | None, customer_id: str | None, attempt_count: int | None = None) -> None:
        await self.notify("payment_failed", user_id=user_id, customer_id=customer_id, attempt_count=attempt_count)

    async def trial_ending(self, user_id: str | None, trial_end: int | None) -> None:
        await self.notify("trial_ending", user_id=user_id, trial_end=trial_end)

    async def invoice_upcoming(self, user_id: str | None, customer_id: str | None, amount_due: int | None) -> None:
        await self.notify("invoice_upcoming", user_id=user_id, customer_id=customer_id, amount_due=amount_due)

    async def payment_confirmation(self, user_id: str, amount: int, currency: str, plan: str) -> None:
        await self.notify("payment_confirmation", user_id=user_id, amount=amount, currency=currency, plan=plan)
