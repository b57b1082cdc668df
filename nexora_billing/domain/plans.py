"""Plan entitlements and provider-to-local value mapping."""

from nexora_billing.domain.enums import BillingCycle, Plan, SubscriptionStatus

# Images per billing period (-1 = unlimited)
PLAN_CREDITS = {
    Plan.FREE: 1,
    Plan.BASIC: 10,
    Plan.PRO: 100,
    Plan.VIP: -1,
}

# Storage quota in MB (-1 = unlimited)
PLAN_STORAGE_MB = {
    Plan.FREE: 100,
    Plan.BASIC: 1_000,
    Plan.PRO: 10_000,
    Plan.VIP: -1,
}

DEFAULT_PAID_PLAN = Plan.BASIC

# Provider subscription status -> local status. Unlisted values are unsupported.
PROVIDER_SUBSCRIPTION_STATUS = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Provider intervals and the spellings checkout metadata uses
_CYCLE_ALIASES = {
    "month": BillingCycle.MONTHLY,
    "year": BillingCycle.ANNUAL,
    "yearly": BillingCycle.ANNUAL,
    "annually": BillingCycle.ANNUAL,
}


def parse_plan(value: str | None, default: Plan = DEFAULT_PAID_PLAN) -> Plan:
    """Map a metadata plan string ("pro", "Pro ") to a Plan, falling back to default."""
    if not value:
        return default
    try:
        return Plan(value.strip().lower())
    except ValueError:
        return default


def parse_billing_cycle(value: str | None, default: BillingCycle = BillingCycle.ONE_TIME) -> BillingCycle:
    """Accept local names ("monthly"), provider intervals ("month") and aliases ("yearly")."""
    if not value:
        return default
    value = value.strip().lower()
    if value in _CYCLE_ALIASES:
        return _CYCLE_ALIASES[value]
    try:
        return BillingCycle(value)
    except ValueError:
        return default


def map_subscription_status(provider_status: str | None, cancel_at_period_end: bool = False) -> SubscriptionStatus | None:
    """Translate a provider subscription status into the local state machine's vocabulary.

    An active subscription scheduled to end is tracked as CANCEL_AT_PERIOD_END.
    Returns None for statuses this service does not model (e.g. "paused").
    """
    status = PROVIDER_SUBSCRIPTION_STATUS.get(provider_status or "")
    if status is SubscriptionStatus.ACTIVE and cancel_at_period_end:
        return SubscriptionStatus.CANCEL_AT_PERIOD_END
    return status


def plan_from_metadata(metadata: dict[str, str] | None) -> str | None:
    """Raw plan name from object metadata; checkout writes it as `plan` or `planType`."""
    if not metadata:
        return None
    return metadata.get("plan") or metadata.get("planType")
