"""Billing lifecycle states and event types."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Charge attempt states."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    """Recurring billing relationship states."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    CANCELED = "canceled"


class EventStatus(str, Enum):
    """Ledger / outcome status of a webhook delivery."""

    RECEIVED = "received"
    DUPLICATE = "duplicate"
    PROCESSED = "processed"
    FAILED = "failed"


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    VIP = "vip"


class BillingCycle(str, Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class EventType(str, Enum):
    """Closed set of provider events this service reconciles.

    Adding a member without registering a handler fails at import time
    (see nexora_billing.webhooks.handlers).
    """

    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    CHARGE_REFUNDED = "charge.refunded"
    DISPUTE_CREATED = "charge.dispute.created"
    EARLY_FRAUD_WARNING = "radar.early_fraud_warning.created"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"

    @classmethod
    def parse(cls, raw: str) -> "EventType | None":
        """Return the member for a provider type string, or None if unsupported."""
        try:
            return cls(raw)
        except ValueError:
            return None
