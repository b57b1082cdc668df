"""Webhook pipeline: rate limit -> verify -> claim -> dispatch -> mark -> audit.

The processor owns the ledger lifecycle (claim and finalize); handlers and
the dispatcher never touch it.
"""

import time
from dataclasses import dataclass, field

import structlog
from redis.asyncio import Redis

from nexora_billing.core.config import Settings, get_settings
from nexora_billing.core.exceptions import (
    DuplicateEventError,
    InvalidSignatureError,
    MalformedEventError,
    RateLimitedError,
    StaleEventError,
    WebhookVerificationError,
)
from nexora_billing.domain.enums import EventStatus
from nexora_billing.metrics.cloudwatch import emit_webhook_outcome
from nexora_billing.middleware.correlation import delivery_id
from nexora_billing.services.audit import AuditSink
from nexora_billing.webhooks.context import HandlerContext
from nexora_billing.webhooks.dispatcher import EventDispatcher, RetryPolicy
from nexora_billing.webhooks.handlers import registry
from nexora_billing.webhooks.idempotency import IdempotencyStore, InMemoryIdempotencyStore, SqlIdempotencyStore
from nexora_billing.webhooks.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitDecision,
    RateLimiter,
    RedisRateLimitStore,
)
from nexora_billing.webhooks.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

DUPLICATE_ACTION = "duplicate_ignored"

_VERIFICATION_CODES = {
    InvalidSignatureError: "invalid_signature",
    StaleEventError: "stale_event",
    MalformedEventError: "malformed_event",
}


@dataclass
class WebhookOutcome:
    """HTTP-shaped result of one delivery."""

    status_code: int
    body: dict
    headers: dict[str, str] = field(default_factory=dict)


class WebhookProcessor:
    def __init__(
        self,
        verifier: SignatureVerifier,
        rate_limiter: RateLimiter,
        idempotency: IdempotencyStore,
        dispatcher: EventDispatcher,
        audit: AuditSink | None = None,
    ):
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.idempotency = idempotency
        self.dispatcher = dispatcher
        self.audit = audit or AuditSink()

    async def process(self, payload: bytes, signature_header: str | None, client_ip: str) -> WebhookOutcome:
        started = time.perf_counter()
        webhook_id = delivery_id()
        headers = {"X-Webhook-ID": webhook_id}

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        # ── Rate limit (before any HMAC work) ────────────────────────
        try:
            decision = await self.rate_limiter.enforce(client_ip)
        except RateLimitedError as e:
            headers.update(RateLimitDecision(False, e.limit, 0, e.retry_after).headers())
            return WebhookOutcome(
                429,
                {"error": "rate_limited", "message": "Too many webhook requests", "retryAfter": e.retry_after},
                headers,
            )
        headers.update(decision.headers())

        # ── Authenticity + freshness ─────────────────────────────────
        try:
            event = self.verifier.verify(payload, signature_header)
        except WebhookVerificationError as e:
            code = _VERIFICATION_CODES.get(type(e), "invalid_webhook")
            logger.warning("webhook_rejected", reason=code, client_ip=client_ip, error=str(e))
            headers["X-Processing-Time"] = f"{elapsed_ms()}ms"
            return WebhookOutcome(400, {"error": code, "message": str(e)}, headers)

        structlog.contextvars.bind_contextvars(event_id=event.id, event_type=event.type, webhook_id=webhook_id)
        try:
            return await self._process_verified(event, headers, elapsed_ms)
        finally:
            structlog.contextvars.unbind_contextvars("event_id", "event_type", "webhook_id")

    async def _process_verified(self, event, headers: dict[str, str], elapsed_ms) -> WebhookOutcome:
        logger.info("webhook_received", livemode=event.livemode, api_version=event.api_version)

        # ── Claim ────────────────────────────────────────────────────
        try:
            await self.idempotency.record_received(event.id, event.type)
        except DuplicateEventError as e:
            duration = elapsed_ms()
            logger.info("webhook_duplicate_ignored", ledger_status=e.status)
            await self.audit.record(
                "webhook_event",
                event_id=event.id,
                event_type=event.type,
                status=EventStatus.DUPLICATE.value,
                ledger_status=e.status,
                processing_time_ms=duration,
            )
            await emit_webhook_outcome(event.type, EventStatus.DUPLICATE.value, duration)
            headers["X-Processing-Time"] = f"{duration}ms"
            return WebhookOutcome(
                200,
                self._body(event, processed=False, duration=duration, actions=[DUPLICATE_ACTION], status=EventStatus.DUPLICATE),
                headers,
            )

        # ── Dispatch + finalize ──────────────────────────────────────
        result = await self.dispatcher.dispatch(event)
        duration = elapsed_ms()

        await self.idempotency.mark_processed(
            event.id,
            result.status,
            result.actions,
            error=result.error,
            processing_time_ms=duration,
            attempts=result.attempts,
        )

        await self.audit.record(
            "webhook_event",
            event_id=event.id,
            event_type=event.type,
            status=result.status.value,
            actions=result.actions,
            attempts=result.attempts,
            error=result.error,
            processing_time_ms=duration,
        )
        await emit_webhook_outcome(event.type, result.status.value, duration)
        headers["X-Processing-Time"] = f"{duration}ms"

        if not result.succeeded:
            logger.error("webhook_processing_failed", attempts=result.attempts, error=result.error, processing_time_ms=duration)
            body = self._body(event, processed=False, duration=duration, actions=result.actions, status=result.status)
            body["error"] = "processing_failed"
            return WebhookOutcome(500, body, headers)

        logger.info("webhook_processed", actions=result.actions, attempts=result.attempts, processing_time_ms=duration)
        return WebhookOutcome(
            200,
            self._body(event, processed=True, duration=duration, actions=result.actions, status=result.status),
            headers,
        )

    @staticmethod
    def _body(event, processed: bool, duration: int, actions: list[str], status: EventStatus) -> dict:
        return {
            "received": True,
            "processed": processed,
            "status": status.value,
            "eventId": event.id,
            "eventType": event.type,
            "processingTimeMs": duration,
            "actions": list(actions),
        }


def build_processor(settings: Settings | None = None, redis: Redis | None = None) -> WebhookProcessor:
    """Wire a processor from settings. Requires a webhook secret."""
    settings = settings or get_settings()

    memory_store = InMemoryRateLimitStore(window_seconds=settings.webhook_rate_limit_window_seconds)
    if settings.webhook_rate_limit_backend == "redis" and redis is not None:
        rate_store = RedisRateLimitStore(redis, fallback=memory_store)
    else:
        if settings.is_production:
            logger.warning("rate_limiter_process_local", reason="redis backend not configured")
        rate_store = memory_store

    if settings.webhook_idempotency_backend == "memory":
        if settings.is_production:
            logger.warning("idempotency_store_process_local", reason="memory backend selected")
        idempotency = InMemoryIdempotencyStore(settings.webhook_claim_ttl_seconds)
    else:
        idempotency = SqlIdempotencyStore(settings.webhook_claim_ttl_seconds)

    return WebhookProcessor(
        verifier=SignatureVerifier(settings.stripe_webhook_secret, settings.webhook_tolerance_seconds),
        rate_limiter=RateLimiter(
            rate_store,
            max_requests=settings.webhook_rate_limit_max_requests,
            window_seconds=settings.webhook_rate_limit_window_seconds,
        ),
        idempotency=idempotency,
        dispatcher=EventDispatcher(
            registry,
            context=HandlerContext(),
            retry_policy=RetryPolicy(
                max_attempts=settings.webhook_max_attempts,
                base_delay=settings.webhook_backoff_base_seconds,
                multiplier=settings.webhook_backoff_multiplier,
                max_delay=settings.webhook_backoff_max_seconds,
            ),
            timeout_seconds=settings.webhook_handler_timeout_seconds,
        ),
    )
