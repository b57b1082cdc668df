"""Integration tests for the per-event handlers against a SQLite database."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from nexora_billing.core.exceptions import HandlerValidationError, MissingUserIdentifierError, ProviderUnavailableError
from nexora_billing.db.models import AuditLog, Customer, Payment, Subscription
from nexora_billing.domain.enums import EventType
from nexora_billing.repositories.base import as_utc
from nexora_billing.repositories.customers import CustomerRepository
from nexora_billing.repositories.entitlements import EntitlementRepository
from nexora_billing.repositories.payments import PaymentRepository
from nexora_billing.repositories.subscriptions import SubscriptionRepository
from nexora_billing.webhooks.context import HandlerContext
from nexora_billing.webhooks.events import WebhookEvent, from_unix
from nexora_billing.webhooks.handlers import registry

pytestmark = pytest.mark.integration

PERIOD_START = 1_700_000_000
PERIOD_END = 1_702_592_000


def subscription_obj(status: str = "active", **overrides) -> dict:
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "metadata": {"userId": "u1", "plan": "pro"},
        "items": {"data": [{"price": {"id": "price_pro", "recurring": {"interval": "month"}}}]},
    }
    obj.update(overrides)
    return obj


def checkout_obj(**overrides) -> dict:
    obj = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "payment",
        "amount_total": 1500,
        "currency": "usd",
        "customer": "cus_1",
        "payment_intent": "pi_1",
        "payment_status": "paid",
        "payment_method_types": ["card"],
        "metadata": {"userId": "u1", "plan": "pro"},
    }
    obj.update(overrides)
    return obj


@pytest.fixture
def ctx(engine) -> HandlerContext:
    gateway = AsyncMock()
    gateway.retrieve_subscription.return_value = subscription_obj()
    gateway.retrieve_customer.return_value = {"id": "cus_1", "object": "customer", "metadata": {}}
    return HandlerContext(gateway=gateway)


def provider_holds(ctx: HandlerContext, obj: dict) -> dict:
    """Make the gateway answer subscription lookups with obj."""
    ctx.gateway.retrieve_subscription.return_value = obj
    return obj


async def run(event_type: str, obj: dict, ctx: HandlerContext, event_id: str = "evt_1") -> list[str]:
    spec = registry.get(EventType(event_type))
    event = WebhookEvent(id=event_id, type=event_type, created_at=datetime.now(UTC), payload=obj)
    result = await spec.handler(spec.model.model_validate(obj), event, ctx)
    return result.actions


# ── checkout.session.* ───────────────────────────────────────────────


async def test_checkout_completed_one_time_payment(ctx):
    actions = await run("checkout.session.completed", checkout_obj(), ctx)

    assert actions == ["payment_updated", "entitlement_updated", "notification_sent", "analytics_tracked", "audit_logged"]

    payment = await PaymentRepository().get_by_provider_id("pi_1")
    assert payment.status == "succeeded"
    assert payment.amount == 1500
    assert payment.user_id == "u1"
    assert payment.plan == "pro"
    assert payment.billing_cycle == "one_time"
    assert payment.checkout_session_id == "cs_1"

    entitlement = await EntitlementRepository().get("u1")
    assert entitlement.plan == "pro"
    assert entitlement.credits == 100
    ctx.gateway.retrieve_subscription.assert_not_awaited()


async def test_checkout_completed_is_idempotent_at_the_row_level(ctx, db_session):
    await run("checkout.session.completed", checkout_obj(), ctx)
    await run("checkout.session.completed", checkout_obj(), ctx, event_id="evt_2")

    count = (await db_session.execute(select(func.count()).select_from(Payment))).scalar_one()
    assert count == 1


async def test_checkout_completed_with_subscription_fetches_snapshot(ctx):
    actions = await run("checkout.session.completed", checkout_obj(mode="subscription", subscription="sub_1"), ctx)

    ctx.gateway.retrieve_subscription.assert_awaited_once_with("sub_1")
    assert "subscription_upserted" in actions
    assert "entitlement_updated" in actions

    subscription = await SubscriptionRepository().get_by_user_id("u1")
    assert subscription.provider_subscription_id == "sub_1"
    assert subscription.status == "active"
    assert subscription.plan == "pro"
    assert subscription.billing_cycle == "monthly"

    payment = await PaymentRepository().get_by_provider_id("pi_1")
    assert payment.billing_cycle == "monthly"


async def test_checkout_user_falls_back_to_email(ctx):
    obj = checkout_obj(metadata={"plan": "basic"}, customer_details={"email": "ana@example.com"})

    await run("checkout.session.completed", obj, ctx)

    payment = await PaymentRepository().get_by_provider_id("pi_1")
    assert payment.user_id == "ana@example.com"


async def test_checkout_without_any_user_identifier_is_rejected(ctx):
    obj = checkout_obj(metadata={"plan": "pro"})

    with pytest.raises(MissingUserIdentifierError):
        await run("checkout.session.completed", obj, ctx)

    assert await PaymentRepository().get_by_provider_id("pi_1") is None
    ctx.gateway.retrieve_customer.assert_awaited_once_with("cus_1")


async def test_checkout_user_resolved_from_stored_customer(ctx):
    await CustomerRepository().upsert("cus_1", user_id="u7", email="u7@example.com")

    await run("checkout.session.completed", checkout_obj(metadata={"plan": "pro"}), ctx)

    assert (await PaymentRepository().get_by_provider_id("pi_1")).user_id == "u7"
    ctx.gateway.retrieve_customer.assert_not_awaited()


async def test_checkout_user_resolved_from_provider_customer(ctx):
    ctx.gateway.retrieve_customer.return_value = {
        "id": "cus_1",
        "object": "customer",
        "email": "lee@example.com",
        "metadata": {"userId": "u8"},
    }

    await run("checkout.session.completed", checkout_obj(metadata={"plan": "pro"}), ctx)

    ctx.gateway.retrieve_customer.assert_awaited_once_with("cus_1")
    assert (await PaymentRepository().get_by_provider_id("pi_1")).user_id == "u8"


async def test_checkout_rejected_customer_lookup_is_missing_user(ctx):
    ctx.gateway.retrieve_customer.side_effect = HandlerValidationError("No such customer: cus_1")

    with pytest.raises(MissingUserIdentifierError):
        await run("checkout.session.completed", checkout_obj(metadata={"plan": "pro"}), ctx)


async def test_checkout_accepts_plan_type_and_yearly_cycle(ctx):
    obj = checkout_obj(metadata={"userId": "u1", "planType": "vip", "billingCycle": "yearly"})

    await run("checkout.session.completed", obj, ctx)

    payment = await PaymentRepository().get_by_provider_id("pi_1")
    assert payment.plan == "vip"
    assert payment.billing_cycle == "annual"


async def test_checkout_expired_cancels_pending_payment(ctx):
    payments = PaymentRepository()
    await payments.upsert("pi_5", checkout_session_id="cs_5", status="pending", amount=500, currency="usd")

    actions = await run("checkout.session.expired", checkout_obj(id="cs_5", payment_intent="pi_5"), ctx)

    assert actions == ["payment_canceled", "analytics_tracked"]
    payment = await payments.get_by_provider_id("pi_5")
    assert payment.status == "canceled"
    assert payment.failure_reason == "checkout_session_expired"


async def test_checkout_expired_without_pending_payment(ctx):
    actions = await run("checkout.session.expired", checkout_obj(id="cs_9", payment_intent=None), ctx)

    assert actions == ["no_pending_payment", "analytics_tracked"]


# ── customer.subscription.* ─────────────────────────────────────────


async def test_subscription_created_upserts_row_and_entitlement(ctx):
    actions = await run("customer.subscription.created", subscription_obj(), ctx)

    assert actions == ["subscription_upserted", "entitlement_updated", "analytics_tracked"]
    subscription = await SubscriptionRepository().get_by_provider_id("sub_1")
    assert subscription.user_id == "u1"
    assert as_utc(subscription.current_period_end) == from_unix(PERIOD_END)
    assert (await EntitlementRepository().get("u1")).plan == "pro"


async def test_subscription_created_applies_current_provider_state(ctx):
    provider_holds(ctx, subscription_obj(status="past_due"))

    actions = await run("customer.subscription.created", subscription_obj(), ctx)

    ctx.gateway.retrieve_subscription.assert_awaited_once_with("sub_1")
    assert actions == ["subscription_upserted", "entitlement_updated", "analytics_tracked"]
    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).status == "past_due"


async def test_subscription_created_falls_back_to_payload_when_lookup_rejected(ctx):
    ctx.gateway.retrieve_subscription.side_effect = HandlerValidationError("No such subscription: sub_1")

    actions = await run("customer.subscription.created", subscription_obj(status="trialing"), ctx)

    assert actions == ["subscription_upserted", "entitlement_updated", "analytics_tracked"]
    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).status == "trialing"


async def test_subscription_created_falls_back_to_payload_when_snapshot_invalid(ctx):
    provider_holds(ctx, {"object": "subscription", "status": "active"})

    await run("customer.subscription.created", subscription_obj(status="trialing"), ctx)

    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).status == "trialing"


async def test_subscription_created_propagates_provider_outage(ctx):
    ctx.gateway.retrieve_subscription.side_effect = ProviderUnavailableError("Stripe unavailable")

    with pytest.raises(ProviderUnavailableError):
        await run("customer.subscription.created", subscription_obj(), ctx)

    assert await SubscriptionRepository().get_by_provider_id("sub_1") is None


async def test_subscription_created_reads_plan_type_metadata(ctx):
    provider_holds(ctx, subscription_obj(metadata={"userId": "u1", "planType": "pro"}))

    await run("customer.subscription.created", subscription_obj(metadata={"userId": "u1", "planType": "pro"}), ctx)

    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).plan == "pro"
    assert (await EntitlementRepository().get("u1")).credits == 100


async def test_subscription_updated_before_created_is_not_fatal(ctx):
    actions = await run("customer.subscription.updated", subscription_obj(status="past_due"), ctx)

    assert actions == ["subscription_not_found"]
    assert await SubscriptionRepository().get_by_provider_id("sub_1") is None

    # The created payload is stale; the provider already holds the later state
    provider_holds(ctx, subscription_obj(status="past_due"))
    await run("customer.subscription.created", subscription_obj(), ctx, event_id="evt_2")
    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).status == "past_due"


@pytest.mark.parametrize("order", [("checkout", "created"), ("created", "checkout")])
async def test_checkout_and_subscription_created_converge(ctx, db_session, order):
    steps = {
        "checkout": ("checkout.session.completed", checkout_obj(mode="subscription", subscription="sub_1")),
        "created": ("customer.subscription.created", subscription_obj()),
    }
    for i, name in enumerate(order):
        event_type, obj = steps[name]
        await run(event_type, obj, ctx, event_id=f"evt_{i}")

    count = (await db_session.execute(select(func.count()).select_from(Subscription))).scalar_one()
    subscription = await SubscriptionRepository().get_by_user_id("u1")
    entitlement = await EntitlementRepository().get("u1")

    assert count == 1
    assert subscription.provider_subscription_id == "sub_1"
    assert subscription.status == "active"
    assert subscription.plan == "pro"
    assert entitlement.plan == "pro"
    assert entitlement.credits == 100


async def test_subscription_updated_to_cancel_at_period_end(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)

    actions = await run(
        "customer.subscription.updated", subscription_obj(cancel_at_period_end=True), ctx, event_id="evt_2"
    )

    assert actions == ["subscription_status_changed", "subscription_updated"]
    subscription = await SubscriptionRepository().get_by_provider_id("sub_1")
    assert subscription.status == "cancel_at_period_end"
    assert subscription.cancel_at_period_end is True
    # Quotas hold until the period ends
    assert (await EntitlementRepository().get("u1")).plan == "pro"


async def test_subscription_updated_to_canceled_downgrades(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)

    actions = await run("customer.subscription.updated", subscription_obj(status="canceled"), ctx, event_id="evt_2")

    assert actions == ["subscription_status_changed", "subscription_updated", "entitlement_downgraded"]
    subscription = await SubscriptionRepository().get_by_provider_id("sub_1")
    assert subscription.status == "canceled"
    assert subscription.canceled_at is not None

    entitlement = await EntitlementRepository().get("u1")
    assert entitlement.plan == "free"
    assert entitlement.credits == 1


async def test_subscription_updated_plan_change_updates_entitlement(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)

    actions = await run(
        "customer.subscription.updated",
        subscription_obj(metadata={"userId": "u1", "plan": "basic"}),
        ctx,
        event_id="evt_2",
    )

    assert actions == ["subscription_updated", "entitlement_updated"]
    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).plan == "basic"
    entitlement = await EntitlementRepository().get("u1")
    assert entitlement.plan == "basic"
    assert entitlement.credits == 10


async def test_subscription_deleted_cancels_and_downgrades(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)

    actions = await run("customer.subscription.deleted", subscription_obj(status="canceled"), ctx, event_id="evt_2")

    assert actions == ["subscription_canceled", "entitlement_downgraded", "analytics_tracked", "audit_logged"]
    subscription = await SubscriptionRepository().get_by_provider_id("sub_1")
    assert subscription.status == "canceled"
    assert subscription.canceled_at is not None

    entitlement = await EntitlementRepository().get("u1")
    assert entitlement.plan == "free"
    assert entitlement.credits == 1


async def test_trial_will_end_notifies(ctx):
    trialing = provider_holds(ctx, subscription_obj(status="trialing", trial_end=PERIOD_END))
    await run("customer.subscription.created", trialing, ctx)

    actions = await run(
        "customer.subscription.trial_will_end",
        subscription_obj(status="trialing", trial_end=PERIOD_END),
        ctx,
        event_id="evt_2",
    )

    assert actions == ["subscription_updated", "notification_sent", "analytics_tracked"]


# ── invoice.* ───────────────────────────────────────────────────────


async def test_invoice_payment_failed_marks_past_due_and_keeps_other_fields(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)
    before = await SubscriptionRepository().get_by_customer_id("cus_1")

    actions = await run(
        "invoice.payment_failed",
        {"id": "in_1", "customer": "cus_1", "amount_due": 1500, "attempt_count": 1},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["subscription_past_due", "notification_sent", "analytics_tracked"]
    after = await SubscriptionRepository().get_by_customer_id("cus_1")
    assert after.status == "past_due"
    assert after.plan == before.plan
    assert after.billing_cycle == before.billing_cycle
    assert as_utc(after.current_period_start) == as_utc(before.current_period_start)
    assert as_utc(after.current_period_end) == as_utc(before.current_period_end)


async def test_invoice_paid_recovers_past_due_subscription(ctx):
    await run("customer.subscription.created", provider_holds(ctx, subscription_obj(status="past_due")), ctx)

    actions = await run(
        "invoice.payment_succeeded",
        {"id": "in_2", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 1500, "currency": "usd"},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["subscription_activated", "entitlement_renewed", "revenue_tracked"]
    subscription = await SubscriptionRepository().get_by_provider_id("sub_1")
    assert subscription.status == "active"
    assert subscription.last_payment_at is not None


async def test_invoice_paid_for_canceled_subscription_is_ignored(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)
    await run("customer.subscription.deleted", subscription_obj(status="canceled"), ctx, event_id="evt_2")

    actions = await run(
        "invoice.payment_succeeded",
        {"id": "in_3", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 1500, "currency": "usd"},
        ctx,
        event_id="evt_3",
    )

    assert "illegal_transition_ignored" in actions
    assert "entitlement_renewed" not in actions
    assert (await SubscriptionRepository().get_by_provider_id("sub_1")).status == "canceled"
    assert (await EntitlementRepository().get("u1")).plan == "free"


async def test_invoice_for_unknown_subscription(ctx):
    actions = await run(
        "invoice.payment_succeeded",
        {"id": "in_4", "customer": "cus_unknown", "amount_paid": 500, "currency": "usd"},
        ctx,
    )

    assert actions == ["subscription_not_found", "revenue_tracked"]


async def test_invoice_upcoming_notifies_known_subscriber(ctx):
    await run("customer.subscription.created", subscription_obj(), ctx)
    ctx.gateway.retrieve_subscription.reset_mock()
    ctx.notifications = AsyncMock()

    actions = await run(
        "invoice.upcoming",
        {"id": "in_5", "customer": "cus_1", "subscription": "sub_1", "amount_due": 1500},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["notification_sent"]
    ctx.notifications.invoice_upcoming.assert_awaited_once_with("u1", "cus_1", 1500)
    ctx.gateway.retrieve_subscription.assert_not_awaited()


async def test_invoice_upcoming_resolves_user_from_provider_subscription(ctx):
    provider_holds(ctx, subscription_obj(id="sub_2", customer="cus_2", metadata={"userId": "u2"}))
    ctx.notifications = AsyncMock()

    actions = await run(
        "invoice.upcoming",
        {"id": "in_6", "customer": "cus_2", "subscription": "sub_2", "amount_due": 900},
        ctx,
    )

    assert actions == ["notification_sent"]
    ctx.gateway.retrieve_subscription.assert_awaited_once_with("sub_2")
    ctx.notifications.invoice_upcoming.assert_awaited_once_with("u2", "cus_2", 900)


async def test_invoice_upcoming_without_resolvable_user_still_notifies(ctx):
    ctx.gateway.retrieve_subscription.side_effect = HandlerValidationError("No such subscription: sub_3")
    ctx.notifications = AsyncMock()

    actions = await run(
        "invoice.upcoming",
        {"id": "in_7", "customer": "cus_3", "subscription": "sub_3", "amount_due": 900},
        ctx,
    )

    assert actions == ["notification_sent"]
    ctx.notifications.invoice_upcoming.assert_awaited_once_with(None, "cus_3", 900)


# ── payment_intent.* ────────────────────────────────────────────────


def intent_obj(**overrides) -> dict:
    obj = {
        "id": "pi_9",
        "object": "payment_intent",
        "amount": 1500,
        "amount_received": 1500,
        "currency": "usd",
        "customer": "cus_1",
        "payment_method_types": ["card"],
        "metadata": {"userId": "u1", "plan": "basic"},
    }
    obj.update(overrides)
    return obj


async def test_payment_intent_succeeded_grants_credits(ctx):
    actions = await run("payment_intent.succeeded", intent_obj(), ctx)

    assert actions == ["payment_updated", "credits_granted", "analytics_tracked"]
    assert (await PaymentRepository().get_by_provider_id("pi_9")).status == "succeeded"
    assert (await EntitlementRepository().get("u1")).credits == 10


async def test_payment_intent_failed_after_succeeded_is_ignored(ctx):
    await run("payment_intent.succeeded", intent_obj(), ctx)

    actions = await run(
        "payment_intent.payment_failed",
        intent_obj(amount_received=0, last_payment_error={"code": "card_declined", "message": "Declined"}),
        ctx,
        event_id="evt_2",
    )

    assert actions == ["illegal_transition_ignored"]
    assert (await PaymentRepository().get_by_provider_id("pi_9")).status == "succeeded"


async def test_payment_intent_failed_records_reason(ctx):
    actions = await run(
        "payment_intent.payment_failed",
        intent_obj(amount_received=0, last_payment_error={"code": "card_declined", "message": "Declined"}),
        ctx,
    )

    assert actions == ["payment_updated", "analytics_tracked"]
    payment = await PaymentRepository().get_by_provider_id("pi_9")
    assert payment.status == "failed"
    assert payment.failure_reason == "Declined"


async def test_payment_intent_succeeded_reads_plan_type_metadata(ctx):
    actions = await run("payment_intent.succeeded", intent_obj(metadata={"userId": "u1", "planType": "pro"}), ctx)

    assert actions == ["payment_updated", "credits_granted", "analytics_tracked"]
    assert (await PaymentRepository().get_by_provider_id("pi_9")).plan == "pro"
    assert (await EntitlementRepository().get("u1")).credits == 100


async def test_payment_intent_canceled_records_reason(ctx):
    actions = await run(
        "payment_intent.canceled",
        intent_obj(amount_received=0, cancellation_reason="abandoned"),
        ctx,
    )

    assert actions == ["payment_updated", "analytics_tracked"]
    payment = await PaymentRepository().get_by_provider_id("pi_9")
    assert payment.status == "canceled"
    assert payment.failure_reason == "abandoned"


async def test_payment_intent_canceled_after_succeeded_is_ignored(ctx):
    await run("payment_intent.succeeded", intent_obj(), ctx)

    actions = await run("payment_intent.canceled", intent_obj(cancellation_reason="abandoned"), ctx, event_id="evt_2")

    assert actions == ["illegal_transition_ignored"]
    assert (await PaymentRepository().get_by_provider_id("pi_9")).status == "succeeded"


# ── charge.* / radar.* ──────────────────────────────────────────────


async def test_full_refund_moves_payment_to_refunded(ctx, db_session):
    await run("checkout.session.completed", checkout_obj(), ctx)

    actions = await run(
        "charge.refunded",
        {"id": "ch_1", "payment_intent": "pi_1", "amount": 1500, "amount_refunded": 1500, "refunded": True},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["payment_refunded", "audit_logged"]
    assert (await PaymentRepository().get_by_provider_id("pi_1")).status == "refunded"
    audit_count = (
        await db_session.execute(select(func.count()).select_from(AuditLog).where(AuditLog.event == "charge_refunded"))
    ).scalar_one()
    assert audit_count == 1


async def test_partial_refund_keeps_payment_succeeded(ctx):
    await run("checkout.session.completed", checkout_obj(), ctx)

    actions = await run(
        "charge.refunded",
        {"id": "ch_1", "payment_intent": "pi_1", "amount": 1500, "amount_refunded": 500, "refunded": False},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["partial_refund_recorded", "audit_logged"]
    assert (await PaymentRepository().get_by_provider_id("pi_1")).status == "succeeded"


async def test_dispute_flags_payment_for_review(ctx):
    await run("checkout.session.completed", checkout_obj(), ctx)

    actions = await run(
        "charge.dispute.created",
        {"id": "dp_1", "charge": "ch_1", "payment_intent": "pi_1", "amount": 1500, "reason": "fraudulent"},
        ctx,
        event_id="evt_2",
    )

    assert actions == ["payment_flagged_for_review", "audit_logged"]
    payment = await PaymentRepository().get_by_provider_id("pi_1")
    assert payment.flagged_for_review is True
    assert payment.status == "succeeded"


async def test_fraud_warning_for_unknown_payment_is_audited(ctx):
    actions = await run(
        "radar.early_fraud_warning.created",
        {"id": "issfr_1", "charge": "ch_x", "payment_intent": "pi_x", "fraud_type": "card_never_received"},
        ctx,
    )

    assert actions == ["payment_not_found", "audit_logged"]


# ── customer.* ──────────────────────────────────────────────────────


def customer_obj(**overrides) -> dict:
    obj = {
        "id": "cus_1",
        "object": "customer",
        "email": "ana@example.com",
        "name": "Ana",
        "metadata": {"userId": "u1"},
    }
    obj.update(overrides)
    return obj


async def test_customer_created_is_mirrored(ctx):
    actions = await run("customer.created", customer_obj(), ctx)

    assert actions == ["customer_upserted"]
    customer = await CustomerRepository().get_by_provider_id("cus_1")
    assert customer.user_id == "u1"
    assert customer.email == "ana@example.com"
    assert customer.name == "Ana"
    assert customer.deleted_at is None


async def test_customer_updated_refreshes_without_blanking_email(ctx, db_session):
    await run("customer.created", customer_obj(), ctx)

    actions = await run(
        "customer.updated",
        customer_obj(email=None, name="Ana Lima", metadata={"userId": "u1", "tier": "gold"}),
        ctx,
        event_id="evt_2",
    )

    assert actions == ["customer_upserted"]
    customer = await CustomerRepository().get_by_provider_id("cus_1")
    assert customer.name == "Ana Lima"
    assert customer.email == "ana@example.com"
    assert customer.metadata_ == {"userId": "u1", "tier": "gold"}

    count = (await db_session.execute(select(func.count()).select_from(Customer))).scalar_one()
    assert count == 1


async def test_customer_deleted_soft_deletes_and_audits(ctx, db_session):
    await run("customer.created", customer_obj(), ctx)

    actions = await run("customer.deleted", customer_obj(deleted=True), ctx, event_id="evt_2")

    assert actions == ["customer_deleted", "audit_logged"]
    assert (await CustomerRepository().get_by_provider_id("cus_1")).deleted_at is not None
    audit_count = (
        await db_session.execute(select(func.count()).select_from(AuditLog).where(AuditLog.event == "customer_deleted"))
    ).scalar_one()
    assert audit_count == 1


async def test_customer_deleted_before_created(ctx):
    actions = await run("customer.deleted", customer_obj(id="cus_404"), ctx)

    assert actions == ["customer_not_found"]
    assert await CustomerRepository().get_by_provider_id("cus_404") is None


async def test_mirrored_customer_resolves_checkout_user(ctx):
    await run("customer.created", customer_obj(metadata={"userId": "u5"}), ctx)

    await run("checkout.session.completed", checkout_obj(metadata={"plan": "basic"}), ctx, event_id="evt_2")

    assert (await PaymentRepository().get_by_provider_id("pi_1")).user_id == "u5"
    ctx.gateway.retrieve_customer.assert_not_awaited()
