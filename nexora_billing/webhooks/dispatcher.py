"""Event dispatch: type lookup, payload validation, timeout and retry.

Every handler error stops here. The dispatcher never raises to its caller;
it reports a DispatchResult and lets the processor decide the HTTP outcome.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from nexora_billing.core.exceptions import HandlerTimeoutError, HandlerValidationError
from nexora_billing.domain.enums import EventStatus
from nexora_billing.webhooks.context import HandlerContext, HandlerRegistry, HandlerResult, HandlerSpec
from nexora_billing.webhooks.events import WebhookEvent

logger = structlog.get_logger(__name__)

UNHANDLED_ACTION = "unhandled_event_logged"


def is_retryable(exc: BaseException) -> bool:
    """Transient failures and unexpected errors are retried; validation failures never are."""
    if isinstance(exc, HandlerValidationError):
        return False
    return isinstance(exc, Exception)


@dataclass
class RetryPolicy:
    """Bounded retry: delay before retry n is min(base_delay * multiplier ** (n - 1), max_delay)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 1.5
    max_delay: float = 10.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, retry_number: int) -> float:
        return min(self.base_delay * self.multiplier ** (retry_number - 1), self.max_delay)

    def retrying(self, event_type: str) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(self.retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay),
            sleep=self.sleep,
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "webhook_handler_retrying",
                event_type=event_type,
                attempt=rs.attempt_number,
                delay_seconds=rs.next_action.sleep if rs.next_action else None,
                error=str(rs.outcome.exception()) if rs.outcome else None,
            ),
        )


@dataclass
class DispatchResult:
    status: EventStatus
    actions: list[str] = field(default_factory=list)
    error: str | None = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == EventStatus.PROCESSED


class EventDispatcher:
    def __init__(
        self,
        registry: HandlerRegistry,
        context: HandlerContext | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 25.0,
    ):
        self.registry = registry
        self.context = context or HandlerContext()
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        event_type = event.event_type
        spec = self.registry.get(event_type) if event_type is not None else None
        if spec is None:
            # New provider event types appear over time; never fail the delivery for them
            logger.info("webhook_event_unhandled", event_id=event.id, event_type=event.type)
            return DispatchResult(EventStatus.PROCESSED, [UNHANDLED_ACTION], None, 0)

        try:
            payload = spec.model.model_validate(event.payload)
        except ValidationError as e:
            logger.error(
                "webhook_payload_invalid",
                event_id=event.id,
                event_type=event.type,
                errors=e.error_count(),
            )
            return DispatchResult(EventStatus.FAILED, [], f"Invalid {event.type} payload: {e.error_count()} error(s)", 0)

        attempts = 0
        try:
            async for attempt in self.retry_policy.retrying(event.type):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    result = await self._run(spec, payload, event)
        except HandlerValidationError as e:
            logger.error(
                "webhook_handler_rejected",
                event_id=event.id,
                event_type=event.type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DispatchResult(EventStatus.FAILED, [], str(e), attempts)
        except Exception as e:
            logger.error(
                "webhook_handler_exhausted",
                event_id=event.id,
                event_type=event.type,
                attempts=attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            return DispatchResult(EventStatus.FAILED, [], str(e) or type(e).__name__, attempts)

        return DispatchResult(EventStatus.PROCESSED, list(result.actions), None, attempts)

    async def _run(self, spec: HandlerSpec, payload, event: WebhookEvent) -> HandlerResult:
        try:
            return await asyncio.wait_for(spec.handler(payload, event, self.context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("webhook_handler_timeout", event_id=event.id, event_type=event.type, timeout_seconds=self.timeout_seconds)
            raise HandlerTimeoutError(event.type, self.timeout_seconds) from e
