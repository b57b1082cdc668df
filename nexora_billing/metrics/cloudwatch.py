"""CloudWatch custom metrics for webhook outcomes and billing business events.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

Metrics are emitted via boto3 put_metric_data. Since boto3 is synchronous,
calls are dispatched to a ThreadPoolExecutor to avoid blocking the async event loop.
Emission is disabled unless CLOUDWATCH_METRICS_ENABLED is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from nexora_billing.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().cloudwatch_region)
    return _cw_client


def _put_webhook_outcome(event_type: str, status: str, duration_ms: float) -> None:
    """Synchronous put_metric_data for one webhook delivery. Runs in thread pool."""
    dimensions = [
        {"Name": "EventType", "Value": event_type},
        {"Name": "Status", "Value": status},
    ]
    try:
        _get_client().put_metric_data(
            Namespace="Nexora/Webhooks",
            MetricData=[
                {
                    "MetricName": "Deliveries",
                    "Dimensions": dimensions,
                    "Value": 1.0,
                    "Unit": "Count",
                    "Timestamp": datetime.now(timezone.utc),
                },
                {
                    "MetricName": "ProcessingTime",
                    "Dimensions": dimensions,
                    "Value": duration_ms,
                    "Unit": "Milliseconds",
                    "Timestamp": datetime.now(timezone.utc),
                },
            ],
        )
    except Exception as e:
        logger.warning("webhook_metric_emit_failed", error=str(e), event_type=event_type)


def _put_business_event(event_name: str, value: float, unit: str) -> None:
    """Synchronous put_metric_data for business events. Runs in thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace="Nexora/Billing",
            MetricData=[{
                "MetricName": event_name,
                "Value": value,
                "Unit": unit,
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_webhook_outcome(event_type: str, status: str, duration_ms: float) -> None:
    """Emit delivery count + latency for a webhook. Non-blocking, fire-and-forget."""
    if not get_settings().cloudwatch_metrics_enabled:
        return
    loop = asyncio.get_event_loop()
    loop.run_in_executor(_executor, _put_webhook_outcome, event_type, status, duration_ms)


async def emit_business_event(event_name: str, value: float = 1.0, unit: str = "Count") -> None:
    """Emit business event metric (e.g. revenue in cents). Non-blocking, fire-and-forget."""
    if not get_settings().cloudwatch_metrics_enabled:
        return
    loop = asyncio.get_event_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, value, unit)
