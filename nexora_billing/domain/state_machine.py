"""Payment and subscription state machines.

Pure transition tables: callers read the current status, ask whether the
target is reachable, and only then write. Re-applying the current status is
always allowed (provider redeliveries and out-of-order events do that a lot).
"""

import structlog

from nexora_billing.core.exceptions import IllegalTransitionError
from nexora_billing.domain.enums import PaymentStatus, SubscriptionStatus

logger = structlog.get_logger(__name__)


class SubscriptionStateMachine:
    """Validates subscription status transitions."""

    TRANSITIONS = {
        SubscriptionStatus.TRIALING: [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED],
        SubscriptionStatus.ACTIVE: [
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.CANCEL_AT_PERIOD_END,
            SubscriptionStatus.CANCELED,
        ],
        SubscriptionStatus.PAST_DUE: [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED],
        SubscriptionStatus.CANCEL_AT_PERIOD_END: [SubscriptionStatus.CANCELED],
        SubscriptionStatus.CANCELED: [],  # Terminal state
    }

    entity = "subscription"

    @classmethod
    def can_transition(cls, current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
        current = SubscriptionStatus(current)
        target = SubscriptionStatus(target)
        if current == target:
            return True
        return target in cls.TRANSITIONS.get(current, [])

    @classmethod
    def ensure(cls, current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> SubscriptionStatus:
        """Return target if reachable from current, else raise IllegalTransitionError."""
        if not cls.can_transition(current, target):
            logger.warning(
                "illegal_transition_ignored",
                entity=cls.entity,
                current=SubscriptionStatus(current).value,
                target=SubscriptionStatus(target).value,
            )
            raise IllegalTransitionError(cls.entity, SubscriptionStatus(current).value, SubscriptionStatus(target).value)
        return SubscriptionStatus(target)


class PaymentStateMachine:
    """Validates payment status transitions."""

    TRANSITIONS = {
        PaymentStatus.PENDING: [PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED],
        PaymentStatus.SUCCEEDED: [PaymentStatus.REFUNDED],
        PaymentStatus.FAILED: [],  # Terminal state
        PaymentStatus.CANCELED: [],  # Terminal state
        PaymentStatus.REFUNDED: [],  # Terminal state
    }

    entity = "payment"

    @classmethod
    def can_transition(cls, current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
        current = PaymentStatus(current)
        target = PaymentStatus(target)
        if current == target:
            return True
        return target in cls.TRANSITIONS.get(current, [])

    @classmethod
    def ensure(cls, current: PaymentStatus | str, target: PaymentStatus | str) -> PaymentStatus:
        """Return target if reachable from current, else raise IllegalTransitionError."""
        if not cls.can_transition(current, target):
            logger.warning(
                "illegal_transition_ignored",
                entity=cls.entity,
                current=PaymentStatus(current).value,
                target=PaymentStatus(target).value,
            )
            raise IllegalTransitionError(cls.entity, PaymentStatus(current).value, PaymentStatus(target).value)
        return PaymentStatus(target)
