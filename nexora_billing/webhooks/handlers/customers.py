"""Customer lifecycle events: keep the local customer mirror in step with the provider."""

import structlog

from nexora_billing.domain.enums import EventType
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import Customer, WebhookEvent

logger = structlog.get_logger(__name__)

router = HandlerRegistry()


async def _mirror(customer: Customer, ctx: HandlerContext) -> HandlerResult:
    await ctx.customers.upsert(
        customer.id,
        user_id=customer.user_id,
        email=customer.email,
        name=customer.name,
        metadata=dict(customer.metadata),
    )
    return HandlerResult(["customer_upserted"])


@router.register(EventType.CUSTOMER_CREATED, Customer)
async def handle_customer_created(
    customer: Customer, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    return await _mirror(customer, ctx)


@router.register(EventType.CUSTOMER_UPDATED, Customer)
async def handle_customer_updated(
    customer: Customer, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    return await _mirror(customer, ctx)


@router.register(EventType.CUSTOMER_DELETED, Customer)
async def handle_customer_deleted(
    customer: Customer, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    if not await ctx.customers.mark_deleted(customer.id):
        logger.info("customer_not_found", customer_id=customer.id)
        return result.add("customer_not_found")

    await ctx.audit.record("customer_deleted", user_id=customer.user_id, customer_id=customer.id, event_id=event.id)
    return result.add("customer_deleted").add("audit_logged")
