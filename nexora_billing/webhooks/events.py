"""Verified webhook events and the payload shape of each supported variant."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from nexora_billing.domain.enums import EventType
from nexora_billing.domain.plans import plan_from_metadata

__all__ = [
    "Charge",
    "CheckoutSession",
    "Customer",
    "Dispute",
    "EarlyFraudWarning",
    "EventType",
    "Invoice",
    "PaymentIntent",
    "StripeSubscription",
    "WebhookEvent",
    "from_unix",
]


def from_unix(ts: int | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC)


@dataclass(frozen=True)
class WebhookEvent:
    """A provider event that passed signature and freshness checks. Never mutated."""

    id: str
    type: str
    created_at: datetime
    payload: dict[str, Any]
    livemode: bool = False
    api_version: str | None = None
    request_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def event_type(self) -> EventType | None:
        return EventType.parse(self.type)


# ── Payload models ──────────────────────────────────────────────────


def _expandable_id(value: Any) -> Any:
    """Expandable fields arrive as an id string or as the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


ExpandableId = Annotated[str | None, BeforeValidator(_expandable_id)]


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = {}


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class TotalDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount_tax: int = 0
    amount_discount: int = 0


class CheckoutSession(_StripeObject):
    mode: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    customer: ExpandableId = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    client_reference_id: str | None = None
    payment_intent: ExpandableId = None
    subscription: ExpandableId = None
    payment_status: str | None = None
    payment_method_types: list[str] = []
    total_details: TotalDetails | None = None

    @property
    def email(self) -> str | None:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email

    @property
    def provider_payment_id(self) -> str:
        """Payment intent id; sessions without one (e.g. free trials) fall back to the session id."""
        return self.payment_intent or self.id


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval: str | None = None


class Price(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    unit_amount: int | None = None
    recurring: Recurring | None = None
    metadata: dict[str, str] = {}


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: Price | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[SubscriptionItem] = []


class StripeSubscription(_StripeObject):
    customer: ExpandableId = None
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    trial_end: int | None = None
    canceled_at: int | None = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None

    @property
    def period(self) -> tuple[datetime | None, datetime | None]:
        """Billing period bounds; newer API versions carry them on the item."""
        start, end = self.current_period_start, self.current_period_end
        item = self.first_item
        if item is not None:
            start = start if start is not None else item.current_period_start
            end = end if end is not None else item.current_period_end
        return from_unix(start), from_unix(end)

    @property
    def interval(self) -> str | None:
        item = self.first_item
        if item and item.price and item.price.recurring:
            return item.price.recurring.interval
        return None

    @property
    def plan_hint(self) -> str | None:
        """Plan name from subscription metadata, then price metadata."""
        plan = plan_from_metadata(self.metadata)
        if plan:
            return plan
        item = self.first_item
        if item and item.price:
            return plan_from_metadata(item.price.metadata)
        return None


class InvoiceSubscriptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: ExpandableId = None


class InvoiceParent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_details: InvoiceSubscriptionDetails | None = None


class Invoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None  # upcoming invoices have no id
    customer: ExpandableId = None
    customer_email: str | None = None
    subscription: ExpandableId = None
    parent: InvoiceParent | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    attempt_count: int | None = None
    billing_reason: str | None = None
    next_payment_attempt: int | None = None
    metadata: dict[str, str] = {}

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class PaymentError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str | None = None
    message: str | None = None


class PaymentIntent(_StripeObject):
    amount: int = 0
    amount_received: int = 0
    currency: str | None = None
    customer: ExpandableId = None
    status: str | None = None
    payment_method_types: list[str] = []
    last_payment_error: PaymentError | None = None
    cancellation_reason: str | None = None


class Charge(_StripeObject):
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False
    currency: str | None = None
    customer: ExpandableId = None
    payment_intent: ExpandableId = None


class Dispute(_StripeObject):
    amount: int = 0
    charge: ExpandableId = None
    payment_intent: ExpandableId = None
    reason: str | None = None
    status: str | None = None


class EarlyFraudWarning(_StripeObject):
    charge: ExpandableId = None
    payment_intent: ExpandableId = None
    fraud_type: str | None = None
    actionable: bool = False


class Customer(_StripeObject):
    email: str | None = None
    name: str | None = None
    deleted: bool = False

    @property
    def user_id(self) -> str | None:
        return self.metadata.get("userId") or self.metadata.get("user_id")
