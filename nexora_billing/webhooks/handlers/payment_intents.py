"""payment_intent.* handlers."""

import structlog

from nexora_billing.core.exceptions import IllegalTransitionError
from nexora_billing.domain.enums import EventType, PaymentStatus
from nexora_billing.domain.plans import parse_plan, plan_from_metadata
from nexora_billing.domain.state_machine import PaymentStateMachine
from nexora_billing.repositories.base import utcnow
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import PaymentIntent, WebhookEvent

logger = structlog.get_logger(__name__)

router = HandlerRegistry()


async def _transition_payment(
    intent: PaymentIntent,
    target: PaymentStatus,
    ctx: HandlerContext,
    result: HandlerResult,
    **fields,
):
    """Move the intent's payment row to target, creating it if unseen.

    A payment we have never seen counts as pending. Returns the stored row,
    or None if the transition was rejected.
    """
    existing = await ctx.payments.get_by_provider_id(intent.id)
    current = existing.status if existing is not None else PaymentStatus.PENDING

    try:
        PaymentStateMachine.ensure(current, target)
    except IllegalTransitionError:
        result.add("illegal_transition_ignored")
        return None

    payment = await ctx.payments.upsert(
        intent.id,
        user_id=intent.metadata.get("userId") or intent.metadata.get("user_id"),
        provider_customer_id=intent.customer,
        amount=intent.amount_received or intent.amount,
        currency=intent.currency,
        status=target.value,
        plan=plan_from_metadata(intent.metadata),
        payment_method=intent.payment_method_types[0] if intent.payment_method_types else None,
        **fields,
    )
    result.add("payment_updated")
    return payment


@router.register(EventType.PAYMENT_INTENT_SUCCEEDED, PaymentIntent)
async def handle_payment_intent_succeeded(
    intent: PaymentIntent, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    payment = await _transition_payment(intent, PaymentStatus.SUCCEEDED, ctx, result, processed_at=utcnow())
    if payment is None:
        return result

    if payment.user_id and payment.plan:
        await ctx.entitlements.set_plan(payment.user_id, parse_plan(payment.plan))
        result.add("credits_granted")
    else:
        logger.info("payment_entitlement_skipped", payment_intent_id=intent.id, reason="no user or plan on payment")

    await ctx.analytics.track(
        "payment_succeeded",
        user_id=payment.user_id,
        payment_intent_id=intent.id,
        amount=payment.amount,
        currency=payment.currency,
    )
    return result.add("analytics_tracked")


@router.register(EventType.PAYMENT_INTENT_FAILED, PaymentIntent)
async def handle_payment_intent_failed(
    intent: PaymentIntent, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    error = intent.last_payment_error
    payment = await _transition_payment(
        intent,
        PaymentStatus.FAILED,
        ctx,
        result,
        failure_reason=(error.message or error.code) if error else None,
    )
    if payment is None:
        return result

    await ctx.analytics.track(
        "payment_failed",
        user_id=payment.user_id,
        payment_intent_id=intent.id,
        failure_code=error.code if error else None,
    )
    return result.add("analytics_tracked")


@router.register(EventType.PAYMENT_INTENT_CANCELED, PaymentIntent)
async def handle_payment_intent_canceled(
    intent: PaymentIntent, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    payment = await _transition_payment(
        intent,
        PaymentStatus.CANCELED,
        ctx,
        result,
        failure_reason=intent.cancellation_reason,
    )
    if payment is None:
        return result

    await ctx.analytics.track("payment_canceled", user_id=payment.user_id, payment_intent_id=intent.id)
    return result.add("analytics_tracked")
