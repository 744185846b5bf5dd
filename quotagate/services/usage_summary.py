from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import utc_now
from quotagate.core.config import get_settings
from quotagate.services.plans import PLAN_FREE, Capability, next_plan_up
from quotagate.services.resolver import SOURCE_FREE, SOURCE_SUBSCRIPTION, EntitlementResolver, get_resolver
from quotagate.services.usage import get_usage_entry, period_key


@dataclass(frozen=True)
class CapabilityUsage:
    capability: str
    used: int
    limit: int | None
    remaining: int | None
    percentage: int
    source: str
    approaching_limit: bool
    limit_reached: bool


@dataclass(frozen=True)
class UpgradeSuggestion:
    capability: str
    message: str
    current_plan: str
    suggested_plan: str | None


@dataclass(frozen=True)
class UsageSummary:
    subject_id: str
    organization_id: str
    period: str
    plan_type: str
    usage: dict[str, CapabilityUsage]
    suggestions: list[UpgradeSuggestion] = field(default_factory=list)


def _capability_usage(
    capability: Capability, used: int, limit: int | None, source: str, ratio: float
) -> CapabilityUsage:
    # Unbounded capabilities never approach or reach a limit.
    if limit is None:
        return CapabilityUsage(
            capability=capability.value,
            used=used,
            limit=None,
            remaining=None,
            percentage=0,
            source=source,
            approaching_limit=False,
            limit_reached=False,
        )
    remaining = max(limit - used, 0)
    percentage = 100 if limit == 0 else round(used * 100 / limit)
    return CapabilityUsage(
        capability=capability.value,
        used=used,
        limit=limit,
        remaining=remaining,
        percentage=percentage,
        source=source,
        approaching_limit=limit == 0 or used >= limit * ratio,
        limit_reached=remaining <= 0,
    )


async def get_usage_summary(
    session: AsyncSession,
    *,
    subject_id: str,
    organization_id: str,
    now: datetime | None = None,
    resolver: EntitlementResolver | None = None,
) -> UsageSummary:
    """Report used/limit/remaining per capability without consuming quota."""
    now = now or utc_now()
    resolver = resolver or get_resolver()
    ratio = get_settings().soft_cap_ratio
    entry = await get_usage_entry(session, subject_id, now)

    usage: dict[str, CapabilityUsage] = {}
    plan_type = PLAN_FREE
    for capability in Capability:
        resolved = await resolver.resolve_limit(
            session=session,
            subject_id=subject_id,
            organization_id=organization_id,
            capability=capability,
            now=now,
        )
        if resolved.plan_type is not None:
            plan_type = resolved.plan_type
        used = int(getattr(entry, capability.value) or 0) if entry is not None else 0
        usage[capability.value] = _capability_usage(capability, used, resolved.limit, resolved.source, ratio)

    suggestions: list[UpgradeSuggestion] = []
    for item in usage.values():
        # Plan upgrades cannot help when a manual override or custom limit governs the cap.
        if not item.approaching_limit or item.source not in (SOURCE_SUBSCRIPTION, SOURCE_FREE):
            continue
        suggestions.append(
            UpgradeSuggestion(
                capability=item.capability,
                message=f"You've used {item.used}/{item.limit} {item.capability} this period",
                current_plan=plan_type,
                suggested_plan=next_plan_up(plan_type),
            )
        )

    return UsageSummary(
        subject_id=subject_id,
        organization_id=organization_id,
        period=period_key(now),
        plan_type=plan_type,
        usage=usage,
        suggestions=suggestions,
    )
