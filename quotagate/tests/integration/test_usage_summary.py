from __future__ import annotations

from datetime import datetime, timezone

import pytest

from quotagate.services.plans import Capability
from quotagate.services.usage import try_increment
from quotagate.services.usage_summary import get_usage_summary
from quotagate.tests.utils.seed import new_id, seed_subscription


NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_summary_reports_usage_without_consuming(session) -> None:
    subject_id = new_id("u")
    organization_id = new_id("org")
    for _ in range(20):
        await try_increment(session, subject_id, Capability.ALERTS, NOW, 25)

    summary = await get_usage_summary(session, subject_id=subject_id, organization_id=organization_id, now=NOW)
    again = await get_usage_summary(session, subject_id=subject_id, organization_id=organization_id, now=NOW)

    alerts = summary.usage["alerts"]
    assert summary.period == "2026-06"
    assert summary.plan_type == "free"
    assert (alerts.used, alerts.limit, alerts.remaining, alerts.percentage) == (20, 25, 5, 80)
    assert alerts.approaching_limit
    assert not alerts.limit_reached
    assert summary.usage["groups"].used == 0
    assert not summary.usage["groups"].approaching_limit
    assert again.usage["alerts"].used == 20

    suggestions = {item.capability: item for item in summary.suggestions}
    assert set(suggestions) == {"alerts"}
    assert suggestions["alerts"].suggested_plan == "pro"


@pytest.mark.asyncio
async def test_summary_for_unbounded_plan_has_no_suggestions(session_factory) -> None:
    subject_id = new_id("u")
    await seed_subscription(session_factory, subject_id=subject_id, plan_type="enterprise", never_expires=True)

    async with session_factory() as session:
        await try_increment(session, subject_id, Capability.GROUPS, NOW, None)
        summary = await get_usage_summary(
            session, subject_id=subject_id, organization_id=new_id("org"), now=NOW
        )

    groups = summary.usage["groups"]
    assert summary.plan_type == "enterprise"
    assert groups.limit is None
    assert groups.remaining is None
    assert groups.used == 1
    assert not groups.limit_reached
    assert summary.suggestions == []
