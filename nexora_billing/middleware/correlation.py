"""Request correlation for webhook deliveries.

One id per delivery: it is echoed in X-Request-ID, reported as the
X-Webhook-ID by the processor and attached to every log line through
core.logging.add_correlation_id.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 128


def _accept_request_id(value: str) -> bool:
    """Caller-supplied ids are kept only if short and printable; others are regenerated."""
    return 0 < len(value) <= _MAX_REQUEST_ID_LENGTH and value.isprintable()


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=_accept_request_id,
        transformer=str.strip,
    )


def get_correlation_id() -> str | None:
    """Current request's correlation id, or None outside a request."""
    return correlation_id.get(None)


def delivery_id() -> str:
    """Id for one webhook delivery: the request's correlation id when there is one."""
    return get_correlation_id() or str(uuid.uuid4())


__all__ = ["REQUEST_ID_HEADER", "delivery_id", "get_correlation_id", "setup_correlation_middleware"]
