class NexoraBillingError(Exception):
    """Base exception for the billing webhook service."""

    pass


# ── Ingestion (terminal for the request, never retried) ─────────────


class WebhookVerificationError(NexoraBillingError):
    """Raised when an inbound webhook cannot be trusted or parsed."""

    pass


class InvalidSignatureError(WebhookVerificationError):
    """Raised when the signature header is missing or does not match the body."""

    pass


class StaleEventError(WebhookVerificationError):
    """Raised when the signed delivery timestamp falls outside the freshness window."""

    def __init__(self, age_seconds: int, tolerance_seconds: int):
        self.age_seconds = age_seconds
        self.tolerance_seconds = tolerance_seconds
        when = "old" if age_seconds >= 0 else "in the future"
        super().__init__(f"Webhook timestamp is {abs(age_seconds)}s {when} (tolerance {tolerance_seconds}s)")


class MalformedEventError(WebhookVerificationError):
    """Raised when a verified body is not a well-formed provider event."""

    pass


class RateLimitedError(NexoraBillingError):
    """Raised when a source exceeds its webhook quota."""

    def __init__(self, identifier: str, retry_after: int, limit: int):
        self.identifier = identifier
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(f"Rate limit exceeded for {identifier}, retry after {retry_after}s")


class DuplicateEventError(NexoraBillingError):
    """Raised when an event id has already been claimed or processed.

    Not a failure: callers short-circuit to a successful "duplicate" response.
    """

    def __init__(self, event_id: str, status: str | None = None):
        self.event_id = event_id
        self.status = status
        super().__init__(f"Event {event_id} already seen (status={status})")


# ── Handler outcomes ────────────────────────────────────────────────


class HandlerValidationError(NexoraBillingError):
    """Raised when an event is semantically invalid; retrying cannot fix it."""

    pass


class MissingUserIdentifierError(HandlerValidationError):
    """Raised when a payload carries neither a user id nor an email."""

    pass


class TransientError(NexoraBillingError):
    """Raised for failures that may succeed on retry (network, database, provider)."""

    pass


class HandlerTimeoutError(TransientError):
    """Raised when a handler exceeds its timeout."""

    def __init__(self, event_type: str, timeout_seconds: float):
        self.event_type = event_type
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Handler for '{event_type}' timed out after {timeout_seconds}s")


class ProviderUnavailableError(TransientError):
    """Raised when the payment provider API cannot be reached."""

    pass


class IllegalTransitionError(NexoraBillingError):
    """Raised when a status change is not in the state machine table."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition {current} -> {target}")
