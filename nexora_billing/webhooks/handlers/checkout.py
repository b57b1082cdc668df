"""checkout.session.* handlers."""

import structlog
from pydantic import ValidationError

from nexora_billing.core.exceptions import HandlerValidationError, IllegalTransitionError, MissingUserIdentifierError
from nexora_billing.domain.enums import BillingCycle, EventType, PaymentStatus
from nexora_billing.domain.plans import parse_billing_cycle, parse_plan, plan_from_metadata
from nexora_billing.domain.state_machine import PaymentStateMachine
from nexora_billing.repositories.base import utcnow
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult
from nexora_billing.webhooks.events import CheckoutSession, Customer, WebhookEvent
from nexora_billing.webhooks.handlers.subscriptions import apply_subscription_snapshot, fetch_subscription

logger = structlog.get_logger(__name__)

router = HandlerRegistry()


async def resolve_user_id(session: CheckoutSession, ctx: HandlerContext) -> str:
    """Who paid for this session.

    metadata.userId, then client_reference_id, then the session email. Sessions
    created for an existing customer may carry none of these; the customer
    (local mirror first, then the provider) is asked for a userId or email.
    """
    user_id = (
        session.metadata.get("userId")
        or session.metadata.get("user_id")
        or session.client_reference_id
    )
    if user_id:
        return user_id
    if session.email:
        logger.info("checkout_user_resolved_by_email", session_id=session.id)
        return session.email
    if session.customer:
        user_id = await _customer_user_id(session.customer, ctx)
        if user_id:
            logger.info("checkout_user_resolved_by_customer", session_id=session.id, customer_id=session.customer)
            return user_id
    raise MissingUserIdentifierError(f"Checkout session {session.id} has no userId, client reference or email")


async def _customer_user_id(customer_id: str, ctx: HandlerContext) -> str | None:
    stored = await ctx.customers.get_by_provider_id(customer_id)
    if stored is not None and (stored.user_id or stored.email):
        return stored.user_id or stored.email

    try:
        customer = Customer.model_validate(await ctx.gateway.retrieve_customer(customer_id))
    except (HandlerValidationError, ValidationError) as e:
        logger.warning("customer_lookup_failed", customer_id=customer_id, error=str(e))
        return None
    return customer.user_id or customer.email


@router.register(EventType.CHECKOUT_COMPLETED, CheckoutSession)
async def handle_checkout_completed(
    session: CheckoutSession, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    user_id = await resolve_user_id(session, ctx)
    plan = parse_plan(plan_from_metadata(session.metadata))
    cycle = parse_billing_cycle(
        session.metadata.get("billingCycle") or session.metadata.get("billing_cycle"),
        default=BillingCycle.MONTHLY if session.subscription else BillingCycle.ONE_TIME,
    )
    amount = session.amount_total or 0
    currency = session.currency or "usd"

    # ── Payment row ──────────────────────────────────────────────────
    existing = await ctx.payments.get_by_provider_id(session.provider_payment_id)
    status = PaymentStatus.SUCCEEDED
    if existing is not None:
        try:
            status = PaymentStateMachine.ensure(existing.status, PaymentStatus.SUCCEEDED)
        except IllegalTransitionError:
            status = PaymentStatus(existing.status)
            result.add("illegal_transition_ignored")

    totals = session.total_details
    await ctx.payments.upsert(
        session.provider_payment_id,
        user_id=user_id,
        provider_customer_id=session.customer,
        checkout_session_id=session.id,
        amount=amount,
        currency=currency,
        status=status.value,
        plan=plan.value,
        billing_cycle=cycle.value,
        payment_method=session.payment_method_types[0] if session.payment_method_types else "card",
        tax_amount=totals.amount_tax if totals else 0,
        discount_amount=totals.amount_discount if totals else 0,
        metadata={
            **session.metadata,
            "session_id": session.id,
            "subscription_id": session.subscription,
            "event_id": event.id,
        },
        processed_at=utcnow(),
    )
    result.add("payment_updated")

    # ── Subscription / entitlement ───────────────────────────────────
    if session.subscription:
        subscription = await fetch_subscription(session.subscription, ctx)
        result.extend(await apply_subscription_snapshot(subscription, ctx, user_id=user_id, default_plan=plan))
    elif status == PaymentStatus.SUCCEEDED:
        await ctx.entitlements.set_plan(user_id, plan)
        result.add("entitlement_updated")

    # ── Sinks ────────────────────────────────────────────────────────
    await ctx.notifications.payment_confirmation(user_id, amount, currency, plan.value)
    result.add("notification_sent")

    await ctx.analytics.track("checkout_completed", user_id=user_id, plan=plan.value, billing_cycle=cycle.value)
    await ctx.analytics.track_revenue(user_id, amount, currency, plan=plan.value, session_id=session.id)
    result.add("analytics_tracked")

    await ctx.audit.record(
        "payment_completed",
        user_id=user_id,
        amount=amount,
        plan=plan.value,
        session_id=session.id,
        event_id=event.id,
    )
    result.add("audit_logged")

    logger.info("checkout_completed", user_id=user_id, plan=plan.value, amount=amount, session_id=session.id)
    return result


@router.register(EventType.CHECKOUT_EXPIRED, CheckoutSession)
async def handle_checkout_expired(
    session: CheckoutSession, event: WebhookEvent, ctx: HandlerContext
) -> HandlerResult:
    result = HandlerResult()

    payment = await ctx.payments.get_by_checkout_session(session.id)
    if payment is None and session.payment_intent:
        payment = await ctx.payments.get_by_provider_id(session.payment_intent)

    if payment is None or payment.status != PaymentStatus.PENDING.value:
        result.add("no_pending_payment")
    else:
        PaymentStateMachine.ensure(payment.status, PaymentStatus.CANCELED)
        await ctx.payments.update_fields(
            payment.provider_payment_id,
            status=PaymentStatus.CANCELED.value,
            failure_reason="checkout_session_expired",
        )
        result.add("payment_canceled")

    user_id = session.metadata.get("userId") or session.client_reference_id
    await ctx.analytics.track("checkout_expired", user_id=user_id, session_id=session.id)
    return result.add("analytics_tracked")
