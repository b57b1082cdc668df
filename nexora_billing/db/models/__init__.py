"""Re-export all models so Base.metadata sees them."""

from nexora_billing.db.models.audit_log import AnalyticsEvent, AuditLog
from nexora_billing.db.models.customer import Customer
from nexora_billing.db.models.entitlement import UserEntitlement
from nexora_billing.db.models.payment import Payment
from nexora_billing.db.models.processed_event import ProcessedWebhookEvent
from nexora_billing.db.models.subscription import Subscription

__all__ = [
    "AnalyticsEvent",
    "AuditLog",
    "Customer",
    "Payment",
    "ProcessedWebhookEvent",
    "Subscription",
    "UserEntitlement",
]
