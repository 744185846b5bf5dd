from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import utc_now
from quotagate.domain.models import SpecialAccessOverride
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event


logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:expiry"


async def deactivate_expired_overrides(session: AsyncSession, now: datetime | None = None) -> int:
    # Resolution already ignores expired overrides; this only makes the stored state match.
    now = now or utc_now()
    with store_errors("deactivate_expired_overrides"):
        result = await session.execute(
            update(SpecialAccessOverride)
            .where(
                SpecialAccessOverride.is_active.is_(True),
                SpecialAccessOverride.expires_at.is_not(None),
                SpecialAccessOverride.expires_at <= now,
            )
            .values(is_active=False, revoked_at=now, revoked_by=EXPIRY_ACTOR, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    deactivated = result.rowcount or 0
    if deactivated:
        await record_event(
            session=session,
            organization_id=None,
            actor_type="system",
            actor_id=EXPIRY_ACTOR,
            event_type="special_access.expired",
            outcome="success",
            resource_type="special_access",
            metadata={"count": deactivated},
        )
    with store_errors("deactivate_expired_overrides"):
        await session.commit()
    logger.info("expired_overrides_deactivated count=%s", deactivated)
    return deactivated
