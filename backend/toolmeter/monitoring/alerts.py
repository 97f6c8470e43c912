"""Security and consistency alerts.

An alert is a structured log line (``security_event=True`` so it can be
filtered in CloudWatch Insights) plus a CloudWatch business event named after
the event type.
"""

import structlog

from toolmeter.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)

EVENT_TYPES = frozenset({
    "auth_failure",
    "rate_limit",
    "invalid_signature",
    "data_inconsistency",
    "store_unavailable",
    "upgrade_required",
})

SEVERITIES = ("low", "medium", "high", "critical")


async def security_event(event_type: str, severity: str, *, user_id: str | None = None, **context) -> None:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown security event type: {event_type}")
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown severity: {severity}")

    log = logger.error if severity in ("high", "critical") else logger.warning
    log(
        "security_event",
        security_event=True,
        event_type=event_type,
        severity=severity,
        user_id=user_id,
        **context,
    )
    await emit_business_event(event_type, user_id=user_id)
