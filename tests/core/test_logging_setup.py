"""Tests for log masking and request correlation helpers."""

import pytest
from asgi_correlation_id.context import correlation_id

from nexora_billing.core.logging import mask_sensitive_values
from nexora_billing.middleware.correlation import _accept_request_id, delivery_id, get_correlation_id

pytestmark = pytest.mark.unit


def test_credential_values_are_masked():
    event = {"event": "webhook_rejected", "stripe_signature": "t=1,v1=abc", "secret": "whsec_x", "event_id": "evt_1"}

    masked = mask_sensitive_values(None, "warning", event)

    assert masked["stripe_signature"] == "***"
    assert masked["secret"] == "***"
    assert masked["event_id"] == "evt_1"


def test_empty_sensitive_values_are_left_alone():
    masked = mask_sensitive_values(None, "info", {"event": "x", "signature": None})

    assert masked["signature"] is None


def test_delivery_id_reuses_request_correlation_id():
    token = correlation_id.set("req-123")
    try:
        assert get_correlation_id() == "req-123"
        assert delivery_id() == "req-123"
    finally:
        correlation_id.reset(token)


def test_delivery_id_outside_a_request_is_generated():
    first, second = delivery_id(), delivery_id()

    assert first and second
    assert first != second


@pytest.mark.parametrize(
    "value,accepted",
    [("evt-trace-1", True), ("", False), ("x" * 129, False), ("bad\nid", False)],
)
def test_request_id_validation(value, accepted):
    assert _accept_request_id(value) is accepted
