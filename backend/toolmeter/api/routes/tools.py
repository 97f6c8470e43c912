"""Metered tool calls: gate, run the registered handler, record on success."""

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException

from toolmeter.core.auth import AuthenticatedUser, require_auth
from toolmeter.entitlements.gate import AccessDecision
from toolmeter.monitoring.alerts import security_event
from toolmeter.schemas.entitlements import ToolCallResponse, UsageLimitResponse, render_quota
from toolmeter.services import EntitlementServices, get_services
from toolmeter.tools.registry import ToolRegistry, get_tool_registry

logger = structlog.get_logger(__name__)

router = APIRouter()


async def require_tool_access(
    tool_name: str,
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
    registry: ToolRegistry = Depends(get_tool_registry),
) -> AccessDecision:
    """FastAPI dependency that gates a tool call on the user's entitlement.

    Raises 404 for unknown tools and a structured 402 when the gate denies.
    """
    if tool_name not in registry:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")

    decision = await services.gate.check_access(user.user_id, tool_name)
    if decision.can_use:
        return decision

    if decision.upgrade_required:
        await security_event(
            "upgrade_required",
            "low",
            user_id=user.user_id,
            tool=tool_name,
            plan_type=decision.plan_type.value,
            reason=decision.reason_code,
        )
    raise HTTPException(
        status_code=402,
        detail=UsageLimitResponse(
            reason=decision.reason_code,
            plan_type=decision.plan_type,
            remaining=render_quota(decision.remaining),
            fallback_mode=decision.fallback_mode,
            upgrade_required=decision.upgrade_required,
            message=decision.message,
        ).model_dump(mode="json"),
    )


@router.post("/{tool_name}", response_model=ToolCallResponse)
async def call_tool(
    tool_name: str,
    payload: dict | None = Body(default=None),
    decision: AccessDecision = Depends(require_tool_access),
    user: AuthenticatedUser = Depends(require_auth),
    services: EntitlementServices = Depends(get_services),
    registry: ToolRegistry = Depends(get_tool_registry),
):
    """Run a metered tool.

    Usage is recorded only after the handler returns; a handler that raises
    leaves the user's quota untouched.
    """
    handler = registry.get(tool_name)
    result = await handler(payload or {}, user)

    recorded = await services.recorder.record_usage(user.user_id, tool_name)
    if not recorded.success:
        logger.warning("tool_usage_not_recorded", user_id=user.user_id, tool=tool_name)

    return ToolCallResponse(
        tool_name=tool_name,
        result=result,
        fallback_mode=recorded.fallback_mode or decision.fallback_mode,
    )
