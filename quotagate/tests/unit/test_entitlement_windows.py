from __future__ import annotations

from datetime import datetime, timedelta, timezone

from quotagate.domain.models import SpecialAccessOverride, Subscription
from quotagate.services.special_access import is_effective
from quotagate.services.subscriptions import is_currently_entitled


NOW = datetime(2026, 5, 10, 12, 0, tzinfo=timezone.utc)


def _subscription(**overrides) -> Subscription:
    values = dict(
        subject_id="u-1",
        plan_type="pro",
        status="active",
        current_period_end=NOW + timedelta(days=3),
        cancel_at_period_end=False,
        never_expires=False,
        is_lifetime=False,
    )
    values.update(overrides)
    return Subscription(**values)


def test_active_subscription_within_period_is_entitled() -> None:
    assert is_currently_entitled(_subscription(), NOW)


def test_subscription_past_period_end_is_not_entitled() -> None:
    assert not is_currently_entitled(_subscription(current_period_end=NOW - timedelta(seconds=1)), NOW)
    # The period end itself is exclusive.
    assert not is_currently_entitled(_subscription(current_period_end=NOW), NOW)


def test_lifetime_and_never_expires_skip_period_check() -> None:
    expired = NOW - timedelta(days=400)
    assert is_currently_entitled(_subscription(current_period_end=expired, is_lifetime=True), NOW)
    assert is_currently_entitled(_subscription(current_period_end=None, never_expires=True), NOW)


def test_non_active_status_is_not_entitled() -> None:
    assert not is_currently_entitled(_subscription(status="canceled"), NOW)
    assert not is_currently_entitled(_subscription(status="past_due", is_lifetime=True), NOW)


def test_cancel_at_period_end_keeps_granting_until_period_end() -> None:
    assert is_currently_entitled(_subscription(cancel_at_period_end=True), NOW)


def test_naive_period_end_is_read_as_utc() -> None:
    naive_end = (NOW + timedelta(hours=1)).replace(tzinfo=None)
    assert is_currently_entitled(_subscription(current_period_end=naive_end), NOW)


def _override(**overrides) -> SpecialAccessOverride:
    values = dict(
        subject_id="u-1",
        organization_id="org-1",
        access_type="custom",
        limits={"alerts": 5},
        granted_by="ops",
        granted_at=NOW - timedelta(days=1),
        expires_at=None,
        is_active=True,
    )
    values.update(overrides)
    return SpecialAccessOverride(**values)


def test_override_effective_until_expiry() -> None:
    assert is_effective(_override(), NOW)
    assert is_effective(_override(expires_at=NOW + timedelta(minutes=1)), NOW)
    assert not is_effective(_override(expires_at=NOW), NOW)
    assert not is_effective(_override(is_active=False), NOW)
