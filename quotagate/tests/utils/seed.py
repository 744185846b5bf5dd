from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotagate.domain.models import Organization, OrganizationAdmin
from quotagate.services.roles import create_organization
from quotagate.services.subscriptions import create_subscription


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


async def seed_subscription(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    subject_id: str,
    plan_type: str,
    period_end: datetime | None = None,
    never_expires: bool = False,
    is_lifetime: bool = False,
) -> None:
    # Default to a period that is still running.
    if period_end is None and not (never_expires or is_lifetime):
        period_end = datetime.now(timezone.utc) + timedelta(days=30)
    async with session_factory() as session:
        await create_subscription(
            session,
            subject_id=subject_id,
            plan_type=plan_type,
            current_period_end=period_end,
            never_expires=never_expires,
            is_lifetime=is_lifetime,
        )


async def seed_organization(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    created_by: str,
    organization_id: str | None = None,
) -> str:
    organization_id = organization_id or new_id("org")
    async with session_factory() as session:
        await create_organization(
            session, organization_id=organization_id, name="Test Org", created_by=created_by
        )
    return organization_id


async def seed_legacy_organization(
    session: AsyncSession,
    *,
    organization_id: str,
    created_by: str | None,
    admins: list[tuple[str, datetime]],
) -> None:
    # Organizations created before roles existed carry an admin set but no role map.
    now = datetime.now(timezone.utc)
    session.add(
        Organization(
            id=organization_id,
            name="Legacy Org",
            created_by=created_by,
            admin_roles={},
            created_at=now,
            updated_at=now,
        )
    )
    for subject_id, added_at in admins:
        session.add(
            OrganizationAdmin(organization_id=organization_id, subject_id=subject_id, added_at=added_at)
        )
    await session.commit()
