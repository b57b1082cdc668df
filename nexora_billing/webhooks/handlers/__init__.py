"""Handler registry covering every EventType.

Importing this package fails if an EventType has no handler, so adding a
new event type without its handler cannot reach production.
"""

from nexora_billing.webhooks.context import HandlerRegistry
from nexora_billing.webhooks.handlers import (
    charges,
    checkout,
    customers,
    invoices,
    payment_intents,
    subscriptions,
)

registry = HandlerRegistry()

registry.include(checkout.router)
registry.include(subscriptions.router)
registry.include(invoices.router)
registry.include(payment_intents.router)
registry.include(charges.router)
registry.include(customers.router)

registry.ensure_exhaustive()
