"""invoice.* handlers: renewals, dunning and upcoming-invoice reminders."""

import structlog

from nexora_billing.core.exceptions import HandlerValidationError, IllegalTransitionError
from nexora_billing.domain.enums import EventType, Plan, SubscriptionStatus
from nexora_billing.domain.state_machine import SubscriptionStateMachine
from nexora_billing.repositories.base import utcnow
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import Invoice, WebhookEvent
from nexora_billing.webhooks.handlers.subscriptions import fetch_subscription

logger = structlog.get_logger(__name__)

router = HandlerRegistry()


@router.register(EventType.INVOICE_PAYMENT_SUCCEEDED, Invoice)
async def handle_invoice_paid(invoice: Invoice, event: WebhookEvent, ctx: HandlerContext) -> HandlerResult:
    result = HandlerResult()

    subscription = await ctx.subscriptions.find(invoice.subscription_id, invoice.customer)
    user_id = subscription.user_id if subscription is not None else invoice.metadata.get("userId")

    if subscription is None:
        # May precede customer.subscription.created; that event sets the state
        logger.info(
            "subscription_not_found",
            invoice_id=invoice.id,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer,
        )
        result.add("subscription_not_found")
    else:
        fields = {"last_payment_at": utcnow()}
        try:
            status = SubscriptionStateMachine.ensure(subscription.status, SubscriptionStatus.ACTIVE)
            if status.value != subscription.status:
                fields["status"] = status.value
            entitled = True
        except IllegalTransitionError:
            result.add("illegal_transition_ignored")
            # Keeps its status; cancel_at_period_end still holds its quota until the period ends
            entitled = subscription.status == SubscriptionStatus.CANCEL_AT_PERIOD_END.value

        await ctx.subscriptions.update_fields(subscription.id, **fields)
        result.add("subscription_activated" if "status" in fields else "subscription_payment_recorded")

        if entitled:
            # New billing period: reset quotas to the plan's allowance
            await ctx.entitlements.set_plan(subscription.user_id, Plan(subscription.plan))
            result.add("entitlement_renewed")

    await ctx.analytics.track_revenue(
        user_id,
        invoice.amount_paid,
        invoice.currency or "usd",
        invoice_id=invoice.id,
        billing_reason=invoice.billing_reason,
    )
    return result.add("revenue_tracked")


@router.register(EventType.INVOICE_PAYMENT_FAILED, Invoice)
async def handle_invoice_payment_failed(
    invoice: Invoice, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    subscription = await ctx.subscriptions.find(invoice.subscription_id, invoice.customer)
    if subscription is None:
        logger.info(
            "subscription_not_found",
            invoice_id=invoice.id,
            subscription_id=invoice.subscription_id,
            customer_id=invoice.customer,
        )
        result.add("subscription_not_found")
        user_id = invoice.metadata.get("userId")
    else:
        user_id = subscription.user_id
        try:
            status = SubscriptionStateMachine.ensure(subscription.status, SubscriptionStatus.PAST_DUE)
            if status.value != subscription.status:
                # Dunning touches the status only; periods and plan stay as they are
                await ctx.subscriptions.update_fields(subscription.id, status=status.value)
            result.add("subscription_past_due")
        except IllegalTransitionError:
            result.add("illegal_transition_ignored")

    await ctx.notifications.payment_failed(user_id, invoice.customer, invoice.attempt_count)
    result.add("notification_sent")
    await ctx.analytics.track(
        "invoice_payment_failed",
        user_id=user_id,
        invoice_id=invoice.id,
        amount_due=invoice.amount_due,
        attempt_count=invoice.attempt_count,
    )
    return result.add("analytics_tracked")


@router.register(EventType.INVOICE_UPCOMING, Invoice)
async def handle_invoice_upcoming(invoice: Invoice, event: WebhookEvent, ctx: HandlerContext) -> HandlerResult:
    subscription = await ctx.subscriptions.find(invoice.subscription_id, invoice.customer)
    user_id = subscription.user_id if subscription is not None else None

    if user_id is None and invoice.subscription_id:
        # Not mirrored locally yet; the provider copy carries the userId metadata
        try:
            remote = await fetch_subscription(invoice.subscription_id, ctx)
            user_id = remote.metadata.get("userId") or remote.metadata.get("user_id")
        except HandlerValidationError as e:
            logger.warning("invoice_user_unresolved", invoice_id=invoice.id, error=str(e))

    await ctx.notifications.invoice_upcoming(user_id, invoice.customer, invoice.amount_due)
    return HandlerResult(["notification_sent"])
