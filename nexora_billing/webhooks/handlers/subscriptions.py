"""customer.subscription.* handlers."""

import structlog
from pydantic import ValidationError

from nexora_billing.core.exceptions import HandlerValidationError, IllegalTransitionError, MissingUserIdentifierError
from nexora_billing.domain.enums import BillingCycle, EventType, Plan, SubscriptionStatus
from nexora_billing.domain.plans import DEFAULT_PAID_PLAN, map_subscription_status, parse_billing_cycle, parse_plan
from nexora_billing.domain.state_machine import SubscriptionStateMachine
from nexora_billing.repositories.base import utcnow
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import StripeSubscription, WebhookEvent, from_unix

logger = structlog.get_logger(__name__)

router = HandlerRegistry()

# Statuses under which the user keeps the paid plan's quotas
_ENTITLED = {
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCEL_AT_PERIOD_END,
}


def _metadata_user_id(sub: StripeSubscription) -> str | None:
    return sub.metadata.get("userId") or sub.metadata.get("user_id")


async def _resolve_user_id(sub: StripeSubscription, ctx: HandlerContext) -> str | None:
    user_id = _metadata_user_id(sub)
    if user_id:
        return user_id
    existing = await ctx.subscriptions.find(sub.id, sub.customer)
    return existing.user_id if existing is not None else None


async def fetch_subscription(subscription_id: str, ctx: HandlerContext) -> StripeSubscription:
    """Current provider state of a subscription; HandlerValidationError if it cannot be used."""
    snapshot = await ctx.gateway.retrieve_subscription(subscription_id)
    try:
        return StripeSubscription.model_validate(snapshot)
    except ValidationError as e:
        raise HandlerValidationError(f"Subscription {subscription_id} snapshot is invalid") from e


async def apply_subscription_snapshot(
    sub: StripeSubscription,
    ctx: HandlerContext,
    user_id: str | None = None,
    default_plan: Plan | None = None,
) -> HandlerResult:
    """Upsert the user's subscription row from a full provider snapshot.

    Shared by customer.subscription.created and checkout.session.completed so
    the two converge on the same row whichever arrives first.
    """
    result = HandlerResult()

    user_id = user_id or await _resolve_user_id(sub, ctx)
    if not user_id:
        raise MissingUserIdentifierError(f"Subscription {sub.id} has no userId metadata and no known customer")

    target = map_subscription_status(sub.status, sub.cancel_at_period_end)
    if target is None:
        logger.warning("subscription_status_unsupported", subscription_id=sub.id, provider_status=sub.status)
        return result.add("subscription_status_unsupported")

    start, end = sub.period
    if start is not None and end is not None and end <= start:
        raise HandlerValidationError(f"Subscription {sub.id} has an empty billing period")

    plan = parse_plan(sub.plan_hint, default=default_plan or DEFAULT_PAID_PLAN)
    status = target

    existing = await ctx.subscriptions.get_by_user_id(user_id)
    if existing is not None and existing.provider_subscription_id == sub.id:
        try:
            status = SubscriptionStateMachine.ensure(existing.status, target)
        except IllegalTransitionError:
            status = SubscriptionStatus(existing.status)
            result.add("illegal_transition_ignored")
    elif existing is not None:
        # A new subscription supersedes the user's previous one
        logger.info(
            "subscription_replaced",
            user_id=user_id,
            previous_subscription_id=existing.provider_subscription_id,
            subscription_id=sub.id,
            previous_status=existing.status,
        )

    await ctx.subscriptions.upsert_for_user(
        user_id,
        provider_subscription_id=sub.id,
        provider_customer_id=sub.customer,
        plan=plan.value,
        status=status.value,
        billing_cycle=parse_billing_cycle(sub.interval, default=BillingCycle.MONTHLY).value,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=status == SubscriptionStatus.CANCEL_AT_PERIOD_END,
        trial_end=from_unix(sub.trial_end),
        canceled_at=from_unix(sub.canceled_at),
    )
    result.add("subscription_upserted")

    entitled_plan = plan if status in _ENTITLED else Plan.FREE
    await ctx.entitlements.set_plan(user_id, entitled_plan)
    result.add("entitlement_updated")
    return result


@router.register(EventType.SUBSCRIPTION_CREATED, StripeSubscription)
async def handle_subscription_created(
    sub: StripeSubscription, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    # The payload may be stale by the time it arrives; prefer what the provider holds now
    try:
        sub = await fetch_subscription(sub.id, ctx)
    except HandlerValidationError as e:
        logger.warning("subscription_snapshot_fallback", subscription_id=sub.id, event_id=event.id, error=str(e))

    result = await apply_subscription_snapshot(sub, ctx)
    user_id = await _resolve_user_id(sub, ctx)
    await ctx.analytics.track("subscription_created", user_id=user_id, subscription_id=sub.id, status=sub.status)
    return result.add("analytics_tracked")


@router.register(EventType.SUBSCRIPTION_UPDATED, StripeSubscription)
async def handle_subscription_updated(
    sub: StripeSubscription, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    existing = await ctx.subscriptions.get_by_provider_id(sub.id)
    if existing is None:
        # Ordering race with customer.subscription.created; that event will carry the state
        logger.info("subscription_not_found", subscription_id=sub.id, event_id=event.id)
        return result.add("subscription_not_found")

    fields = {}
    status = SubscriptionStatus(existing.status)
    target = map_subscription_status(sub.status, sub.cancel_at_period_end)
    if target is None:
        logger.warning("subscription_status_unsupported", subscription_id=sub.id, provider_status=sub.status)
        result.add("subscription_status_unsupported")
    elif target != status:
        try:
            status = SubscriptionStateMachine.ensure(status, target)
            fields["status"] = status.value
            fields["cancel_at_period_end"] = sub.cancel_at_period_end
            if status == SubscriptionStatus.CANCELED:
                fields["canceled_at"] = from_unix(sub.canceled_at) or utcnow()
            result.add("subscription_status_changed")
        except IllegalTransitionError:
            result.add("illegal_transition_ignored")

    start, end = sub.period
    if start is not None and end is not None:
        if end <= start:
            raise HandlerValidationError(f"Subscription {sub.id} has an empty billing period")
        fields["current_period_start"] = start
        fields["current_period_end"] = end

    plan_changed = False
    if sub.plan_hint:
        plan = parse_plan(sub.plan_hint, default=Plan(existing.plan))
        if plan.value != existing.plan:
            fields["plan"] = plan.value
            plan_changed = True
    if sub.interval:
        fields["billing_cycle"] = parse_billing_cycle(sub.interval, default=BillingCycle(existing.billing_cycle)).value
    if sub.trial_end is not None:
        fields["trial_end"] = from_unix(sub.trial_end)

    if fields:
        await ctx.subscriptions.update_fields(existing.id, **fields)
        result.add("subscription_updated")

    if status == SubscriptionStatus.CANCELED and existing.status != SubscriptionStatus.CANCELED.value:
        await ctx.entitlements.set_plan(existing.user_id, Plan.FREE)
        result.add("entitlement_downgraded")
    elif plan_changed and status in _ENTITLED:
        await ctx.entitlements.set_plan(existing.user_id, Plan(fields["plan"]))
        result.add("entitlement_updated")

    return result


@router.register(EventType.SUBSCRIPTION_DELETED, StripeSubscription)
async def handle_subscription_deleted(
    sub: StripeSubscription, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    existing = await ctx.subscriptions.find(sub.id, sub.customer)
    if existing is None:
        logger.info("subscription_not_found", subscription_id=sub.id, event_id=event.id)
        return result.add("subscription_not_found")

    # Every state may move to canceled (canceled -> canceled is a no-op)
    SubscriptionStateMachine.ensure(existing.status, SubscriptionStatus.CANCELED)
    if existing.status != SubscriptionStatus.CANCELED.value:
        await ctx.subscriptions.update_fields(
            existing.id,
            status=SubscriptionStatus.CANCELED.value,
            canceled_at=utcnow(),
        )
    result.add("subscription_canceled")

    await ctx.entitlements.set_plan(existing.user_id, Plan.FREE)
    result.add("entitlement_downgraded")

    await ctx.analytics.track("subscription_canceled", user_id=existing.user_id, subscription_id=sub.id, plan=existing.plan)
    result.add("analytics_tracked")
    await ctx.audit.record("subscription_canceled", user_id=existing.user_id, subscription_id=sub.id, event_id=event.id)
    return result.add("audit_logged")


@router.register(EventType.SUBSCRIPTION_TRIAL_WILL_END, StripeSubscription)
async def handle_trial_will_end(
    sub: StripeSubscription, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    existing = await ctx.subscriptions.find(sub.id, sub.customer)
    user_id = existing.user_id if existing is not None else _metadata_user_id(sub)
    if existing is not None and sub.trial_end is not None:
        await ctx.subscriptions.update_fields(existing.id, trial_end=from_unix(sub.trial_end))
        result.add("subscription_updated")

    await ctx.notifications.trial_ending(user_id, sub.trial_end)
    result.add("notification_sent")
    await ctx.analytics.track("trial_ending", user_id=user_id, subscription_id=sub.id)
    return result.add("analytics_tracked")
