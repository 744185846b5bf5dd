from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import ensure_utc, utc_now
from quotagate.core.errors import InvalidConfigurationError, NotFoundError
from quotagate.domain.models import SpecialAccessOverride
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event
from quotagate.services.plans import UNLIMITED, Capability, validate_limits


logger = logging.getLogger(__name__)

ACCESS_UNLIMITED = "unlimited"
ACCESS_PREMIUM = "premium"
ACCESS_CUSTOM = "custom"

# Preset limits merged beneath caller-supplied limits for each access type.
ACCESS_TYPE_PRESETS: dict[str, dict[str, int]] = {
    ACCESS_UNLIMITED: {capability.value: UNLIMITED for capability in Capability},
    ACCESS_PREMIUM: {
        Capability.ALERTS.value: 1000,
        Capability.GROUPS.value: 100,
        Capability.ADMINS.value: 25,
    },
    ACCESS_CUSTOM: {},
}


def is_effective(override: SpecialAccessOverride, now: datetime) -> bool:
    # Inactive or expired overrides behave exactly as if they were absent.
    if not override.is_active:
        return False
    if override.expires_at is None:
        return True
    return ensure_utc(now) < ensure_utc(override.expires_at)


def build_override_limits(access_type: str, limits: Mapping[str, Any] | None) -> dict[str, int]:
    preset = ACCESS_TYPE_PRESETS.get(access_type)
    if preset is None:
        raise InvalidConfigurationError(f"Unknown access type: {access_type!r}")
    merged = dict(preset)
    merged.update(validate_limits(limits))
    if not merged:
        raise InvalidConfigurationError("Custom special access requires at least one limit")
    return merged


async def get_override(
    session: AsyncSession, subject_id: str, organization_id: str
) -> SpecialAccessOverride | None:
    with store_errors("get_override"):
        return await session.get(SpecialAccessOverride, (subject_id, organization_id))


async def get_effective_override(
    session: AsyncSession, subject_id: str, organization_id: str, now: datetime
) -> SpecialAccessOverride | None:
    override = await get_override(session, subject_id, organization_id)
    if override is None or not is_effective(override, now):
        return None
    return override


async def grant_override(
    session: AsyncSession,
    *,
    subject_id: str,
    organization_id: str,
    limits: Mapping[str, Any] | None,
    granted_by: str,
    expires_at: datetime | None = None,
    access_type: str = ACCESS_CUSTOM,
    reason: str | None = None,
) -> SpecialAccessOverride:
    """Grant or re-grant special access for a subject within an organization.

    Limits are validated here so malformed values never reach the resolver.
    Re-granting reuses the existing row to keep a single audited record per
    (subject, organization).
    """
    resolved_limits = build_override_limits(access_type, limits)
    now = utc_now()
    if expires_at is not None and ensure_utc(expires_at) <= now:
        raise InvalidConfigurationError("expires_at must be in the future")

    override = await get_override(session, subject_id, organization_id)
    if override is None:
        override = SpecialAccessOverride(subject_id=subject_id, organization_id=organization_id)
        session.add(override)
    override.access_type = access_type
    override.limits = resolved_limits
    override.granted_by = granted_by
    override.granted_at = now
    override.expires_at = expires_at
    override.is_active = True
    override.reason = reason or "Special access granted"
    override.revoked_at = None
    override.revoked_by = None
    override.updated_at = now

    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="subject",
        actor_id=granted_by,
        event_type="special_access.granted",
        outcome="success",
        resource_type="special_access",
        resource_id=subject_id,
        metadata={
            "access_type": access_type,
            "limits": resolved_limits,
            "expires_at": expires_at,
            "reason": override.reason,
        },
    )
    with store_errors("grant_override"):
        await session.commit()
    logger.info(
        "special_access_granted subject_id=%s organization_id=%s access_type=%s",
        subject_id,
        organization_id,
        access_type,
    )
    return override


async def revoke_override(
    session: AsyncSession,
    *,
    subject_id: str,
    organization_id: str,
    revoked_by: str,
) -> SpecialAccessOverride:
    # Deactivate rather than delete so the grant history stays auditable.
    override = await get_override(session, subject_id, organization_id)
    if override is None:
        raise NotFoundError(f"No special access for {subject_id} in {organization_id}")
    now = utc_now()
    override.is_active = False
    override.revoked_at = now
    override.revoked_by = revoked_by
    override.updated_at = now
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="subject",
        actor_id=revoked_by,
        event_type="special_access.revoked",
        outcome="success",
        resource_type="special_access",
        resource_id=subject_id,
    )
    with store_errors("revoke_override"):
        await session.commit()
    logger.info(
        "special_access_revoked subject_id=%s organization_id=%s revoked_by=%s",
        subject_id,
        organization_id,
        revoked_by,
    )
    return override


async def set_override_expiry(
    session: AsyncSession,
    *,
    subject_id: str,
    organization_id: str,
    expires_at: datetime | None,
    actor_id: str,
) -> SpecialAccessOverride:
    override = await get_override(session, subject_id, organization_id)
    if override is None:
        raise NotFoundError(f"No special access for {subject_id} in {organization_id}")
    override.expires_at = expires_at
    override.updated_at = utc_now()
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="subject",
        actor_id=actor_id,
        event_type="special_access.expiry_changed",
        outcome="success",
        resource_type="special_access",
        resource_id=subject_id,
        metadata={"expires_at": expires_at},
    )
    with store_errors("set_override_expiry"):
        await session.commit()
    return override


async def list_organization_overrides(
    session: AsyncSession, organization_id: str
) -> list[SpecialAccessOverride]:
    with store_errors("list_organization_overrides"):
        result = await session.execute(
            select(SpecialAccessOverride)
            .where(
                SpecialAccessOverride.organization_id == organization_id,
                SpecialAccessOverride.is_active.is_(True),
            )
            .order_by(SpecialAccessOverride.subject_id)
        )
    return list(result.scalars().all())
