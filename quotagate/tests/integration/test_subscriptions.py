from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from quotagate.core.errors import InvalidConfigurationError, NotFoundError, UnknownPlanError
from quotagate.domain.models import AuditEvent
from quotagate.services.subscriptions import (
    cancel_subscription,
    create_subscription,
    get_subscription,
    is_currently_entitled,
    renew_subscription,
    set_status,
)
from quotagate.tests.utils.seed import new_id


@pytest.mark.asyncio
async def test_create_rejects_unknown_plan(session) -> None:
    with pytest.raises(UnknownPlanError):
        await create_subscription(session, subject_id=new_id("u"), plan_type="platinum")


@pytest.mark.asyncio
async def test_cancel_keeps_access_until_period_end_then_renew(session_factory) -> None:
    subject_id = new_id("u")
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        await create_subscription(
            session, subject_id=subject_id, plan_type="pro", current_period_end=now + timedelta(days=3)
        )
        canceled = await cancel_subscription(session, subject_id=subject_id)
    assert canceled.cancel_at_period_end
    assert is_currently_entitled(canceled, now)
    assert not is_currently_entitled(canceled, now + timedelta(days=4))

    async with session_factory() as session:
        renewed = await renew_subscription(
            session,
            subject_id=subject_id,
            current_period_start=now + timedelta(days=3),
            current_period_end=now + timedelta(days=33),
            plan_type="premium",
        )
    assert renewed.plan_type == "premium"
    assert is_currently_entitled(renewed, now + timedelta(days=4))

    async with session_factory() as session:
        stored = await get_subscription(session, subject_id)
    assert stored.plan_type == "premium"


@pytest.mark.asyncio
async def test_set_status_normalizes_and_validates(session) -> None:
    subject_id = new_id("u")
    await create_subscription(session, subject_id=subject_id, plan_type="pro", never_expires=True)

    record = await set_status(session, subject_id=subject_id, status="cancelled")
    assert record.status == "canceled"
    assert not is_currently_entitled(record, datetime.now(timezone.utc))

    with pytest.raises(InvalidConfigurationError):
        await set_status(session, subject_id=subject_id, status="paused")
    with pytest.raises(NotFoundError):
        await cancel_subscription(session, subject_id=new_id("u"))


@pytest.mark.asyncio
async def test_renew_and_status_changes_are_audited(session_factory) -> None:
    subject_id = new_id("u")
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        await create_subscription(
            session, subject_id=subject_id, plan_type="pro", current_period_end=now + timedelta(days=1)
        )
        await renew_subscription(
            session,
            subject_id=subject_id,
            current_period_start=now + timedelta(days=1),
            current_period_end=now + timedelta(days=31),
        )
        await set_status(session, subject_id=subject_id, status="past_due")

    async with session_factory() as session:
        events = (
            await session.execute(
                select(AuditEvent)
                .where(AuditEvent.resource_id == subject_id)
                .order_by(AuditEvent.id)
            )
        ).scalars().all()
    assert [event.event_type for event in events] == [
        "subscription.created",
        "subscription.renewed",
        "subscription.status_changed",
    ]
    status_event = events[-1]
    assert status_event.metadata_json["previous_status"] == "active"
    assert status_event.metadata_json["status"] == "past_due"
