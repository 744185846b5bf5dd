from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import ensure_utc, utc_now
from quotagate.core.errors import InvalidConfigurationError, NotFoundError
from quotagate.domain.models import Subscription
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event
from quotagate.services.plans import get_plan


logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"

SUBSCRIPTION_STATUSES = frozenset({STATUS_ACTIVE, STATUS_CANCELED, STATUS_PAST_DUE})


def _validate_status(status: str) -> str:
    # Upstream billing sometimes spells it "cancelled"; store a single spelling.
    normalized = STATUS_CANCELED if status == "cancelled" else status
    if normalized not in SUBSCRIPTION_STATUSES:
        raise InvalidConfigurationError(f"Unknown subscription status: {status!r}")
    return normalized


def is_currently_entitled(record: Subscription, now: datetime) -> bool:
    """Return True when the record may be used to resolve plan limits at ``now``.

    Lifetime and never-expiring records skip the period check. A record that is
    not active, or whose period has ended, is treated by callers as absent.
    ``cancel_at_period_end`` does not matter here: canceled-at-period-end records
    keep granting until ``current_period_end``.
    """
    if record.status != STATUS_ACTIVE:
        return False
    if record.never_expires or record.is_lifetime:
        return True
    if record.current_period_end is None:
        return False
    return ensure_utc(now) < ensure_utc(record.current_period_end)


async def get_subscription(session: AsyncSession, subject_id: str) -> Subscription | None:
    with store_errors("get_subscription"):
        result = await session.execute(select(Subscription).where(Subscription.subject_id == subject_id))
    return result.scalar_one_or_none()


async def get_subscription_by_customer(
    session: AsyncSession, billing_customer_id: str
) -> Subscription | None:
    # Billing events identify customers, not subjects.
    with store_errors("get_subscription_by_customer"):
        result = await session.execute(
            select(Subscription).where(Subscription.billing_customer_id == billing_customer_id).limit(1)
        )
    return result.scalar_one_or_none()


async def _require_subscription(session: AsyncSession, subject_id: str) -> Subscription:
    record = await get_subscription(session, subject_id)
    if record is None:
        raise NotFoundError(f"No subscription for subject {subject_id}")
    return record


async def create_subscription(
    session: AsyncSession,
    *,
    subject_id: str,
    plan_type: str,
    current_period_start: datetime | None = None,
    current_period_end: datetime | None = None,
    never_expires: bool = False,
    is_lifetime: bool = False,
    billing_customer_id: str | None = None,
    billing_subscription_id: str | None = None,
    actor_id: str = "system",
) -> Subscription:
    # Creation always yields an active record and replaces any previous one for the subject.
    get_plan(plan_type)
    now = utc_now()
    record = await get_subscription(session, subject_id)
    if record is None:
        record = Subscription(subject_id=subject_id)
        session.add(record)
    record.plan_type = plan_type
    record.status = STATUS_ACTIVE
    record.current_period_start = current_period_start or now
    record.current_period_end = current_period_end
    record.cancel_at_period_end = False
    record.never_expires = never_expires
    record.is_lifetime = is_lifetime
    record.billing_customer_id = billing_customer_id
    record.billing_subscription_id = billing_subscription_id
    record.updated_at = now

    await record_event(
        session=session,
        organization_id=None,
        actor_type="system" if actor_id == "system" else "subject",
        actor_id=actor_id,
        event_type="subscription.created",
        outcome="success",
        resource_type="subscription",
        resource_id=subject_id,
        metadata={
            "plan_type": plan_type,
            "never_expires": never_expires,
            "is_lifetime": is_lifetime,
            "current_period_end": current_period_end,
        },
    )
    with store_errors("create_subscription"):
        await session.commit()
    logger.info("subscription_created subject_id=%s plan_type=%s", subject_id, plan_type)
    return record


async def renew_subscription(
    session: AsyncSession,
    *,
    subject_id: str,
    current_period_start: datetime,
    current_period_end: datetime,
    plan_type: str | None = None,
) -> Subscription:
    # A new billing cycle moves the period forward and reactivates the record.
    record = await _require_subscription(session, subject_id)
    if plan_type is not None:
        get_plan(plan_type)
        record.plan_type = plan_type
    record.current_period_start = current_period_start
    record.current_period_end = current_period_end
    record.status = STATUS_ACTIVE
    record.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=None,
        actor_type="system",
        actor_id="system",
        event_type="subscription.renewed",
        outcome="success",
        resource_type="subscription",
        resource_id=subject_id,
        metadata={
            "plan_type": record.plan_type,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
        },
    )
    with store_errors("renew_subscription"):
        await session.commit()
    logger.info(
        "subscription_renewed subject_id=%s period_end=%s",
        subject_id,
        current_period_end.isoformat(),
    )
    return record


async def cancel_subscription(session: AsyncSession, *, subject_id: str) -> Subscription:
    # Cancellation keeps the record usable until current_period_end.
    record = await _require_subscription(session, subject_id)
    record.cancel_at_period_end = True
    record.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=None,
        actor_type="subject",
        actor_id=subject_id,
        event_type="subscription.cancel_requested",
        outcome="success",
        resource_type="subscription",
        resource_id=subject_id,
        metadata={"current_period_end": record.current_period_end},
    )
    with store_errors("cancel_subscription"):
        await session.commit()
    logger.info("subscription_cancel_requested subject_id=%s", subject_id)
    return record


async def set_status(
    session: AsyncSession,
    *,
    subject_id: str,
    status: str,
    cancel_at_period_end: bool | None = None,
) -> Subscription:
    record = await _require_subscription(session, subject_id)
    previous_status = record.status
    record.status = _validate_status(status)
    if cancel_at_period_end is not None:
        record.cancel_at_period_end = cancel_at_period_end
    record.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=None,
        actor_type="system",
        actor_id="system",
        event_type="subscription.status_changed",
        outcome="success",
        resource_type="subscription",
        resource_id=subject_id,
        metadata={
            "previous_status": previous_status,
            "status": record.status,
            "cancel_at_period_end": record.cancel_at_period_end,
        },
    )
    with store_errors("set_subscription_status"):
        await session.commit()
    logger.info("subscription_status_changed subject_id=%s status=%s", subject_id, record.status)
    return record
