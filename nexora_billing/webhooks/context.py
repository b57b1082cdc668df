"""Handler plumbing: what a handler receives, what it returns, and how it is registered."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from pydantic import BaseModel

from nexora_billing.domain.enums import EventType
from nexora_billing.repositories.customers import CustomerRepository
from nexora_billing.repositories.entitlements import EntitlementRepository
from nexora_billing.repositories.payments import PaymentRepository
from nexora_billing.repositories.subscriptions import SubscriptionRepository
from nexora_billing.services.analytics import AnalyticsSink
from nexora_billing.services.audit import AuditSink
from nexora_billing.services.notifications import NotificationService
from nexora_billing.services.stripe_gateway import StripeGateway
from nexora_billing.webhooks.events import WebhookEvent


@dataclass
class HandlerContext:
    """Collaborators a handler may touch. Tests swap any of them out."""

    payments: PaymentRepository = field(default_factory=PaymentRepository)
    subscriptions: SubscriptionRepository = field(default_factory=SubscriptionRepository)
    entitlements: EntitlementRepository = field(default_factory=EntitlementRepository)
    customers: CustomerRepository = field(default_factory=CustomerRepository)
    gateway: StripeGateway = field(default_factory=StripeGateway)
    audit: AuditSink = field(default_factory=AuditSink)
    analytics: AnalyticsSink = field(default_factory=AnalyticsSink)
    notifications: NotificationService = field(default_factory=NotificationService)


@dataclass
class HandlerResult:
    """Ordered names of the side effects a handler performed."""

    actions: list[str] = field(default_factory=list)

    def add(self, action: str) -> "HandlerResult":
        self.actions.append(action)
        return self

    def extend(self, other: "HandlerResult") -> "HandlerResult":
        self.actions.extend(other.actions)
        return self


Handler = Callable[[BaseModel, WebhookEvent, HandlerContext], Awaitable[HandlerResult]]


@dataclass(frozen=True)
class HandlerSpec:
    event_type: EventType
    model: type[BaseModel]
    handler: Handler


class HandlerRegistry:
    """Maps each EventType to its payload model and handler.

    Handler modules each own a registry and the package-level one includes
    them, the same way API routers are composed.
    """

    def __init__(self):
        self._specs: dict[EventType, HandlerSpec] = {}

    def register(self, event_type: EventType, model: type[BaseModel]):
        def decorator(func: Handler) -> Handler:
            self._add(HandlerSpec(event_type, model, func))
            return func

        return decorator

    def include(self, other: "HandlerRegistry") -> None:
        for spec in other._specs.values():
            self._add(spec)

    def _add(self, spec: HandlerSpec) -> None:
        if spec.event_type in self._specs:
            raise ValueError(f"Duplicate handler registered for {spec.event_type.value}")
        self._specs[spec.event_type] = spec

    def get(self, event_type: EventType) -> HandlerSpec | None:
        return self._specs.get(event_type)

    def ensure_exhaustive(self) -> None:
        missing = [t.value for t in EventType if t not in self._specs]
        if missing:
            raise RuntimeError(f"No webhook handler registered for: {missing}")

    def __contains__(self, event_type: EventType) -> bool:
        return event_type in self._specs

    def __len__(self) -> int:
        return len(self._specs)
