"""Post-payment charge events: refunds, disputes and fraud warnings."""

import structlog

from nexora_billing.core.exceptions import IllegalTransitionError
from nexora_billing.domain.enums import EventType, PaymentStatus
from nexora_billing.domain.state_machine import PaymentStateMachine
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import Charge, Dispute, EarlyFraudWarning, WebhookEvent

logger = structlog.get_logger(__name__)

router = HandlerRegistry()


@router.register(EventType.CHARGE_REFUNDED, Charge)
async def handle_charge_refunded(charge: Charge, event: WebhookEvent, ctx: HandlerContext) -> HandlerResult:
    result = HandlerResult()

    payment = await ctx.payments.get_by_provider_id(charge.payment_intent) if charge.payment_intent else None
    if payment is None:
        logger.info("payment_not_found", charge_id=charge.id, payment_intent_id=charge.payment_intent)
        return result.add("payment_not_found")

    if not charge.refunded:
        # Partial refund: the payment stays succeeded
        result.add("partial_refund_recorded")
    else:
        try:
            PaymentStateMachine.ensure(payment.status, PaymentStatus.REFUNDED)
            await ctx.payments.update_fields(payment.provider_payment_id, status=PaymentStatus.REFUNDED.value)
            result.add("payment_refunded")
        except IllegalTransitionError:
            result.add("illegal_transition_ignored")

    await ctx.audit.record(
        "charge_refunded",
        user_id=payment.user_id,
        charge_id=charge.id,
        amount_refunded=charge.amount_refunded,
        full_refund=charge.refunded,
        event_id=event.id,
    )
    return result.add("audit_logged")


async def _flag_for_review(
    kind: str,
    object_id: str,
    payment_intent_id: str | None,
    event: WebhookEvent,
    ctx: HandlerContext,
    **details,
) -> HandlerResult:
    """Mark the payment for manual review without changing its status."""
    result = HandlerResult()

    payment = await ctx.payments.get_by_provider_id(payment_intent_id) if payment_intent_id else None
    if payment is None:
        logger.warning("payment_not_found", kind=kind, object_id=object_id, payment_intent_id=payment_intent_id)
        result.add("payment_not_found")
        user_id = None
    else:
        await ctx.payments.update_fields(payment.provider_payment_id, flagged_for_review=True)
        result.add("payment_flagged_for_review")
        user_id = payment.user_id

    logger.warning("payment_review_required", kind=kind, object_id=object_id, payment_intent_id=payment_intent_id)
    await ctx.audit.record(kind, user_id=user_id, object_id=object_id, event_id=event.id, **details)
    return result.add("audit_logged")


@router.register(EventType.DISPUTE_CREATED, Dispute)
async def handle_dispute_created(dispute: Dispute, event: WebhookEvent, ctx: HandlerContext) -> HandlerResult:
    return await _flag_for_review(
        "dispute_created",
        dispute.id,
        dispute.payment_intent,
        event,
        ctx,
        charge_id=dispute.charge,
        amount=dispute.amount,
        reason=dispute.reason,
    )


@router.register(EventType.EARLY_FRAUD_WARNING, EarlyFraudWarning)
async def handle_early_fraud_warning(
    warning: EarlyFraudWarning, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    return await _flag_for_review(
        "early_fraud_warning",
        warning.id,
        warning.payment_intent,
        event,
        ctx,
        charge_id=warning.charge,
        fraud_type=warning.fraud_type,
        actionable=warning.actionable,
    )
