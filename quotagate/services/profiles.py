from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import utc_now
from quotagate.domain.models import SubjectProfile
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event
from quotagate.services.plans import validate_limits


logger = logging.getLogger(__name__)


async def get_profile(session: AsyncSession, subject_id: str) -> SubjectProfile | None:
    with store_errors("get_profile"):
        return await session.get(SubjectProfile, subject_id)


async def set_custom_limits(
    session: AsyncSession,
    *,
    subject_id: str,
    custom_limits: Mapping[str, Any],
    actor_id: str,
) -> SubjectProfile:
    # Validate on write so the resolver only ever sees well-formed limits.
    limits = validate_limits(custom_limits)
    profile = await get_profile(session, subject_id)
    if profile is None:
        profile = SubjectProfile(subject_id=subject_id)
        session.add(profile)
    profile.custom_limits = limits
    profile.has_custom_limits = bool(limits)
    profile.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=None,
        actor_type="subject",
        actor_id=actor_id,
        event_type="profile.custom_limits_set",
        outcome="success",
        resource_type="subject_profile",
        resource_id=subject_id,
        metadata={"custom_limits": limits},
    )
    with store_errors("set_custom_limits"):
        await session.commit()
    logger.info("custom_limits_set subject_id=%s capabilities=%s", subject_id, sorted(limits))
    return profile


async def clear_custom_limits(session: AsyncSession, *, subject_id: str, actor_id: str) -> None:
    profile = await get_profile(session, subject_id)
    if profile is None or not profile.has_custom_limits:
        return
    profile.has_custom_limits = False
    profile.custom_limits = {}
    profile.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=None,
        actor_type="subject",
        actor_id=actor_id,
        event_type="profile.custom_limits_cleared",
        outcome="success",
        resource_type="subject_profile",
        resource_id=subject_id,
    )
    with store_errors("clear_custom_limits"):
        await session.commit()
