from __future__ import annotations

import json

import httpx
import pytest

from quotagate.core.config import get_settings
from quotagate.services import notifications
from quotagate.services.notifications import (
    EVENT_HEADER,
    EVENT_QUOTA_EXCEEDED,
    SIGNATURE_HEADER,
    build_signature,
    notify_quota_event,
)
from quotagate.services.plans import Capability
from quotagate.services.resolver import EntitlementDecision, EntitlementResolver
from quotagate.services.profiles import set_custom_limits
from quotagate.tests.utils.seed import new_id


def _enable(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_WEBHOOK_ENABLED", "true")
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "http://dispatcher.test/hooks/quota")
    monkeypatch.setenv("NOTIFY_WEBHOOK_SECRET", "notify-secret")
    get_settings.cache_clear()


def _denial() -> EntitlementDecision:
    return EntitlementDecision(
        allowed=False,
        reason="quota_exceeded",
        capability=Capability.ALERTS,
        remaining=0,
        limit=25,
        used=25,
        source="free",
        plan_type="free",
    )


@pytest.mark.asyncio
async def test_disabled_notifications_do_not_send() -> None:
    result = await notify_quota_event(
        event_type=EVENT_QUOTA_EXCEEDED, subject_id="u-1", organization_id="org-1", decision=_denial()
    )
    assert not result.sent
    assert result.message == "Notifications are disabled"


@pytest.mark.asyncio
async def test_signed_event_is_posted(monkeypatch) -> None:
    _enable(monkeypatch)
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    result = await notify_quota_event(
        event_type=EVENT_QUOTA_EXCEEDED,
        subject_id="u-1",
        organization_id="org-1",
        decision=_denial(),
        transport=httpx.MockTransport(handler),
    )

    assert result.sent
    assert result.status_code == 202
    request = captured[0]
    assert request.headers[EVENT_HEADER] == EVENT_QUOTA_EXCEEDED
    assert request.headers[SIGNATURE_HEADER] == build_signature("notify-secret", request.content)
    body = json.loads(request.content)
    assert body["capability"] == "alerts"
    assert body["used"] == 25
    assert body["limit"] == 25


@pytest.mark.asyncio
async def test_dispatcher_errors_are_reported_not_raised(monkeypatch) -> None:
    _enable(monkeypatch)

    def rejecting(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def failing(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    rejected = await notify_quota_event(
        event_type=EVENT_QUOTA_EXCEEDED,
        subject_id="u-1",
        organization_id="org-1",
        decision=_denial(),
        transport=httpx.MockTransport(rejecting),
    )
    assert not rejected.sent
    assert rejected.status_code == 500

    unreachable = await notify_quota_event(
        event_type=EVENT_QUOTA_EXCEEDED,
        subject_id="u-1",
        organization_id="org-1",
        decision=_denial(),
        transport=httpx.MockTransport(failing),
    )
    assert not unreachable.sent
    assert unreachable.status_code is None


@pytest.mark.asyncio
async def test_resolver_emits_soft_cap_and_exceeded_events(monkeypatch, session_factory) -> None:
    subject_id = new_id("u")
    organization_id = new_id("org")
    events: list[str] = []

    async def fake_notify(*, event_type, subject_id, organization_id, decision, transport=None):
        events.append(event_type)
        return notifications.DeliveryResult(sent=True, status_code=202, message="Event delivered")

    monkeypatch.setattr(notifications, "notify_quota_event", fake_notify)

    async with session_factory() as session:
        await set_custom_limits(session, subject_id=subject_id, custom_limits={"alerts": 5}, actor_id="ops")

    resolver = EntitlementResolver()
    for _ in range(6):
        async with session_factory() as session:
            await resolver.check_and_consume(
                session=session,
                subject_id=subject_id,
                organization_id=organization_id,
                capability=Capability.ALERTS,
            )

    # 80% of 5 is reached on the 4th grant; the 6th attempt is denied.
    assert events == ["quota.soft_cap_reached", "quota.exceeded"]
