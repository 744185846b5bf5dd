from __future__ import annotations

from datetime import datetime, timezone

import pytest

from quotagate.core.errors import InvalidConfigurationError
from quotagate.services.plans import Capability
from quotagate.services.usage import current_count, list_usage_history, try_increment
from quotagate.tests.utils.seed import new_id


MARCH = datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc)
APRIL = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_missing_entry_reads_as_zero(session) -> None:
    assert await current_count(session, new_id("u"), Capability.ALERTS, MARCH) == 0


@pytest.mark.asyncio
async def test_increment_refuses_at_limit_without_writing(session) -> None:
    subject_id = new_id("u")
    for expected in (1, 2):
        result = await try_increment(session, subject_id, Capability.GROUPS, MARCH, 2)
        assert result.granted
        assert result.count == expected

    refused = await try_increment(session, subject_id, Capability.GROUPS, MARCH, 2)
    assert not refused.granted
    assert refused.count == 2
    assert await current_count(session, subject_id, Capability.GROUPS, MARCH) == 2


@pytest.mark.asyncio
async def test_zero_limit_never_grants(session) -> None:
    subject_id = new_id("u")
    result = await try_increment(session, subject_id, Capability.ADMINS, MARCH, 0)
    assert not result.granted
    assert result.count == 0


@pytest.mark.asyncio
async def test_unbounded_limit_always_increments(session) -> None:
    subject_id = new_id("u")
    for _ in range(30):
        result = await try_increment(session, subject_id, Capability.ALERTS, MARCH, None)
        assert result.granted
    assert result.count == 30


@pytest.mark.asyncio
async def test_counters_are_independent_per_capability(session) -> None:
    subject_id = new_id("u")
    await try_increment(session, subject_id, Capability.ALERTS, MARCH, 10)
    await try_increment(session, subject_id, Capability.ALERTS, MARCH, 10)
    await try_increment(session, subject_id, Capability.GROUPS, MARCH, 10)

    assert await current_count(session, subject_id, Capability.ALERTS, MARCH) == 2
    assert await current_count(session, subject_id, Capability.GROUPS, MARCH) == 1
    assert await current_count(session, subject_id, Capability.ADMINS, MARCH) == 0


@pytest.mark.asyncio
async def test_rollover_starts_new_period_and_keeps_history(session) -> None:
    subject_id = new_id("u")
    for _ in range(3):
        await try_increment(session, subject_id, Capability.ALERTS, MARCH, 3)
    assert not (await try_increment(session, subject_id, Capability.ALERTS, MARCH, 3)).granted

    april = await try_increment(session, subject_id, Capability.ALERTS, APRIL, 3)
    assert april.granted
    assert april.count == 1

    history = await list_usage_history(session, subject_id)
    assert [(entry.period_key, entry.alerts) for entry in history] == [("2026-03", 3), ("2026-04", 1)]


@pytest.mark.asyncio
async def test_negative_limit_is_rejected(session) -> None:
    with pytest.raises(InvalidConfigurationError):
        await try_increment(session, new_id("u"), Capability.ALERTS, MARCH, -1)
