"""Read-after-webhook access to the Stripe API.

Webhook payloads carry a snapshot; handlers that need the full object
(e.g. the subscription behind a checkout session) fetch it here. Stripe
errors are mapped onto the dispatcher's retry vocabulary.
"""

import stripe
import structlog

from nexora_billing.core.config import get_settings
from nexora_billing.core.exceptions import HandlerValidationError, ProviderUnavailableError

logger = structlog.get_logger(__name__)


def _get_stripe() -> None:
    """Configure the stripe module with the secret key."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key


class StripeGateway:
    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return await self._retrieve(stripe.Subscription, "subscription", subscription_id)

    async def retrieve_customer(self, customer_id: str) -> dict:
        return await self._retrieve(stripe.Customer, "customer", customer_id)

    async def _retrieve(self, resource, kind: str, object_id: str) -> dict:
        _get_stripe()
        try:
            obj = await resource.retrieve_async(object_id)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning("stripe_unavailable", kind=kind, object_id=object_id, error=str(e))
            raise ProviderUnavailableError(f"Stripe unavailable retrieving {kind} {object_id}") from e
        except stripe.InvalidRequestError as e:
            # Unknown id or bad parameters: retrying will not help
            logger.error("stripe_invalid_request", kind=kind, object_id=object_id, error=str(e))
            raise HandlerValidationError(f"Stripe rejected {kind} lookup for {object_id}: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.warning("stripe_api_error", kind=kind, object_id=object_id, error=str(e))
            raise ProviderUnavailableError(f"Stripe error retrieving {kind} {object_id}") from e

        logger.debug("stripe_object_retrieved", kind=kind, object_id=object_id)
        return obj.to_dict()
