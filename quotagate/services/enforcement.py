from __future__ import annotations

from fastapi import HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.services.plans import Capability, next_plan_up
from quotagate.services.resolver import (
    REASON_NOT_AUTHORIZED,
    UNBOUNDED,
    EntitlementDecision,
    EntitlementResolver,
    get_resolver,
)


def _format_limit(value: int | None) -> str:
    # Represent unbounded limits using the agreed header token.
    return UNBOUNDED if value is None else str(value)


def quota_headers(decision: EntitlementDecision) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    return {
        "X-Quota-Capability": decision.capability_name,
        "X-Quota-Limit": _format_limit(decision.limit),
        "X-Quota-Used": str(decision.used or 0),
        "X-Quota-Remaining": _format_limit(decision.remaining),
    }


def build_denial_exception(decision: EntitlementDecision) -> HTTPException:
    # Authorization denials carry no usage or organization details.
    if decision.reason == REASON_NOT_AUTHORIZED:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Not authorized for this action"},
        )

    detail = {
        "code": "QUOTA_EXCEEDED",
        "message": f"Monthly {decision.capability_name} quota exceeded",
        "capability": decision.capability_name,
        "limit": decision.limit,
        "used": decision.used,
        "remaining": 0,
        "upgrade_plan": next_plan_up(decision.plan_type) if decision.plan_type else None,
    }
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail=detail,
        headers=quota_headers(decision),
    )


async def enforce_capability(
    *,
    response: Response,
    session: AsyncSession,
    subject_id: str,
    organization_id: str,
    capability: Capability | str,
    acting_subject_id: str | None = None,
    resolver: EntitlementResolver | None = None,
) -> EntitlementDecision:
    # Enforce entitlements in the request pipeline before the action runs.
    resolver = resolver or get_resolver()
    decision = await resolver.check_and_consume(
        session=session,
        subject_id=subject_id,
        organization_id=organization_id,
        capability=capability,
        acting_subject_id=acting_subject_id,
    )
    if not decision.allowed:
        raise build_denial_exception(decision)

    for key, value in quota_headers(decision).items():
        response.headers[key] = value
    return decision
