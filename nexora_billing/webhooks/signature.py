"""Webhook authenticity and freshness checks.

Verification runs over the exact raw request bytes; nothing may parse or
re-serialize the body before this point.
"""

import json
import time

import stripe
import structlog

from nexora_billing.core.exceptions import InvalidSignatureError, MalformedEventError, StaleEventError
from nexora_billing.webhooks.events import WebhookEvent, from_unix

logger = structlog.get_logger(__name__)


def _signed_timestamp(signature_header: str) -> int:
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                break
    raise InvalidSignatureError("Signature header has no valid timestamp")


class SignatureVerifier:
    """Validates Stripe-Signature headers and turns verified bodies into WebhookEvents."""

    def __init__(self, secret: str, tolerance_seconds: int = 300):
        if not secret:
            raise ValueError("Webhook signing secret is required")
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str | None, now: float | None = None) -> WebhookEvent:
        """Return the parsed event, or raise a WebhookVerificationError subclass.

        Freshness is judged on the signed delivery timestamp (`t=`), which the
        provider refreshes on every delivery attempt; the event's own `created`
        stays fixed across redeliveries and would reject legitimate retries.
        """
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignatureError("Payload is not valid UTF-8") from e

        try:
            # Tolerance disabled here: staleness is classified separately below
            stripe.WebhookSignature.verify_header(body, signature_header, self.secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignatureError("Signature does not match payload") from e

        signed_at = _signed_timestamp(signature_header)
        now = time.time() if now is None else now
        age = int(now - signed_at)
        if abs(age) > self.tolerance_seconds:
            # Too old, or signed further in the future than clock skew explains
            logger.warning("webhook_stale_rejected", age_seconds=age, tolerance_seconds=self.tolerance_seconds)
            raise StaleEventError(age, self.tolerance_seconds)

        return self._parse(body)

    def _parse(self, body: str) -> WebhookEvent:
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedEventError("Webhook body is not valid JSON") from e

        if not isinstance(data, dict):
            raise MalformedEventError("Webhook body is not a JSON object")

        event_id = data.get("id")
        event_type = data.get("type")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
            raise MalformedEventError("Webhook event is missing id or type")

        container = data.get("data")
        obj = container.get("object") if isinstance(container, dict) else None
        if not isinstance(obj, dict):
            raise MalformedEventError(f"Webhook event {event_id} has no data.object")

        created = data.get("created")
        request = data.get("request")
        return WebhookEvent(
            id=event_id,
            type=event_type,
            created_at=from_unix(created if isinstance(created, int) else int(time.time())),
            payload=obj,
            livemode=bool(data.get("livemode", False)),
            api_version=data.get("api_version"),
            request_id=request.get("id") if isinstance(request, dict) else None,
            raw=data,
        )
