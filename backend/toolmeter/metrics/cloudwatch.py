"""CloudWatch business-event metrics for entitlement and billing transitions.

Fire-and-forget: boto3 is synchronous, so ``put_metric_data`` runs on a small
thread pool and failures are logged as warnings. Callers are never blocked
and never see an exception. Disabled unless ``Settings.metrics_enabled``.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from toolmeter.core.config import get_settings

logger = structlog.get_logger(__name__)

NAMESPACE = "Toolmeter/Entitlements"

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().metrics_region)
    return _cw_client


def _put_business_event(event_name: str, user_id: str | None = None) -> None:
    """Synchronous put_metric_data. Runs in thread pool."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if user_id:
        dimensions.append({"Name": "UserId", "Value": user_id})
    try:
        _get_client().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": dimensions,
                "Value": 1.0,
                "Unit": "Count",
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        # boto3 raises botocore and urllib3 errors alike; a metric must never break billing
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, user_id: str | None = None) -> None:
    """Emit a business event metric. Non-blocking, fire-and-forget."""
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, user_id)
