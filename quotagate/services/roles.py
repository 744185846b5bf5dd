from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import ensure_utc, utc_now
from quotagate.core.errors import InvalidConfigurationError, NotAuthorizedError
from quotagate.domain.models import Organization, OrganizationAdmin
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event


logger = logging.getLogger(__name__)

ROLE_ORG_ADMIN = "org_admin"
ROLE_ADMIN = "admin"

ROLES = frozenset({ROLE_ORG_ADMIN, ROLE_ADMIN})

_NOT_AUTHORIZED_MESSAGE = "Not authorized to manage roles for this organization"


def _validate_role(role: str) -> str:
    if role not in ROLES:
        raise InvalidConfigurationError(f"Unknown admin role: {role!r}")
    return role


async def _load_organization(
    session: AsyncSession,
    organization_id: str,
    *,
    lock: bool = False,
    shared: bool = False,
) -> Organization | None:
    # Row locks serialize role writes and role-gated actions per organization.
    stmt = select(Organization).where(Organization.id == organization_id)
    if lock:
        stmt = stmt.with_for_update(read=shared)
    with store_errors("load_organization"):
        result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_organization(
    session: AsyncSession,
    *,
    organization_id: str,
    name: str,
    created_by: str,
    created_at: datetime | None = None,
) -> Organization:
    # The creator becomes the first admin and the owner.
    now = created_at or utc_now()
    organization = Organization(
        id=organization_id,
        name=name,
        created_by=created_by,
        admin_roles={created_by: ROLE_ORG_ADMIN},
        created_at=now,
        updated_at=now,
    )
    session.add(organization)
    session.add(OrganizationAdmin(organization_id=organization_id, subject_id=created_by, added_at=now))
    with store_errors("create_organization"):
        await session.commit()
    logger.info("organization_created organization_id=%s created_by=%s", organization_id, created_by)
    return organization


async def role_of(
    session: AsyncSession,
    organization_id: str,
    subject_id: str,
    *,
    lock: bool = False,
) -> str | None:
    """Return the subject's role in the organization, or None.

    With ``lock=True`` the organization row is held with a shared lock until the
    caller's transaction ends, so a concurrent revoke waits for the in-flight
    administrative action to finish.
    """
    organization = await _load_organization(session, organization_id, lock=lock, shared=True)
    if organization is None:
        return None
    role = (organization.admin_roles or {}).get(subject_id)
    return role if role in ROLES else None


async def list_admins(session: AsyncSession, organization_id: str) -> list[OrganizationAdmin]:
    with store_errors("list_admins"):
        result = await session.execute(
            select(OrganizationAdmin)
            .where(OrganizationAdmin.organization_id == organization_id)
            .order_by(OrganizationAdmin.added_at, OrganizationAdmin.subject_id)
        )
    return list(result.scalars().all())


async def _require_org_admin(
    session: AsyncSession, organization_id: str, acting_subject_id: str
) -> Organization:
    organization = await _load_organization(session, organization_id, lock=True)
    # Unknown organizations and missing roles share one error so existence is not revealed.
    if organization is None:
        raise NotAuthorizedError(_NOT_AUTHORIZED_MESSAGE)
    if (organization.admin_roles or {}).get(acting_subject_id) != ROLE_ORG_ADMIN:
        raise NotAuthorizedError(_NOT_AUTHORIZED_MESSAGE)
    return organization


async def _audit_role_change(
    session: AsyncSession,
    *,
    organization_id: str,
    acting_subject_id: str,
    subject_id: str,
    event_type: str,
    outcome: str,
    metadata: dict[str, str | None],
) -> None:
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="subject",
        actor_id=acting_subject_id,
        event_type=event_type,
        outcome=outcome,
        resource_type="admin_role",
        resource_id=subject_id,
        metadata=metadata,
        error_code=None if outcome == "success" else "AUTH_FORBIDDEN",
    )


async def assign_role(
    session: AsyncSession,
    *,
    organization_id: str,
    subject_id: str,
    role: str,
    acting_subject_id: str,
) -> str | None:
    """Assign ``role`` to ``subject_id``; returns the previous role.

    Only an org_admin may change assignments. Admins may not modify roles at
    all, which also means an org_admin can never be demoted by a non-org_admin.
    """
    _validate_role(role)
    try:
        organization = await _require_org_admin(session, organization_id, acting_subject_id)
    except NotAuthorizedError:
        await _audit_role_change(
            session,
            organization_id=organization_id,
            acting_subject_id=acting_subject_id,
            subject_id=subject_id,
            event_type="roles.assign_denied",
            outcome="failure",
            metadata={"role": role},
        )
        with store_errors("assign_role"):
            await session.commit()
        logger.info(
            "role_assign_denied organization_id=%s acting_subject_id=%s",
            organization_id,
            acting_subject_id,
        )
        raise

    now = utc_now()
    roles = dict(organization.admin_roles or {})
    previous = roles.get(subject_id)
    roles[subject_id] = role
    # Reassign the dict so the JSON column is flagged dirty.
    organization.admin_roles = roles
    organization.updated_at = now

    with store_errors("assign_role"):
        membership = await session.get(OrganizationAdmin, (organization_id, subject_id))
    if membership is None:
        session.add(OrganizationAdmin(organization_id=organization_id, subject_id=subject_id, added_at=now))

    await _audit_role_change(
        session,
        organization_id=organization_id,
        acting_subject_id=acting_subject_id,
        subject_id=subject_id,
        event_type="roles.assigned",
        outcome="success",
        metadata={"role": role, "previous_role": previous},
    )
    with store_errors("assign_role"):
        await session.commit()
    logger.info(
        "role_assigned organization_id=%s subject_id=%s role=%s previous=%s",
        organization_id,
        subject_id,
        role,
        previous,
    )
    return previous


async def revoke_role(
    session: AsyncSession,
    *,
    organization_id: str,
    subject_id: str,
    acting_subject_id: str,
) -> str | None:
    # Removing a role also removes admin membership; returns the removed role.
    organization = await _require_org_admin(session, organization_id, acting_subject_id)
    roles = dict(organization.admin_roles or {})
    previous = roles.pop(subject_id, None)
    organization.admin_roles = roles
    organization.updated_at = utc_now()

    with store_errors("revoke_role"):
        membership = await session.get(OrganizationAdmin, (organization_id, subject_id))
        if membership is not None:
            await session.delete(membership)

    await _audit_role_change(
        session,
        organization_id=organization_id,
        acting_subject_id=acting_subject_id,
        subject_id=subject_id,
        event_type="roles.revoked",
        outcome="success",
        metadata={"previous_role": previous},
    )
    with store_errors("revoke_role"):
        await session.commit()
    logger.info(
        "role_revoked organization_id=%s subject_id=%s previous=%s",
        organization_id,
        subject_id,
        previous,
    )
    return previous


def pick_owner(organization: Organization, admins: list[OrganizationAdmin]) -> str | None:
    """Choose the single org_admin for an organization without roles.

    The creator wins when they are still an admin; otherwise the earliest
    ``added_at`` wins, with ``subject_id`` breaking ties. Store iteration order
    is never consulted.
    """
    if not admins:
        return None
    admin_ids = {admin.subject_id for admin in admins}
    if organization.created_by and organization.created_by in admin_ids:
        return organization.created_by
    earliest = min(admins, key=lambda admin: (ensure_utc(admin.added_at), admin.subject_id))
    return earliest.subject_id


async def backfill_admin_roles(session: AsyncSession) -> int:
    # Assign roles to organizations that predate the role map; returns organizations updated.
    with store_errors("backfill_admin_roles"):
        result = await session.execute(select(Organization).order_by(Organization.id))
    organizations = list(result.scalars().all())

    updated = 0
    for organization in organizations:
        if organization.admin_roles:
            logger.debug("backfill_skip organization_id=%s reason=roles_present", organization.id)
            continue
        admins = await list_admins(session, organization.id)
        owner = pick_owner(organization, admins)
        if owner is None:
            logger.info("backfill_skip organization_id=%s reason=no_admins", organization.id)
            continue
        organization.admin_roles = {
            admin.subject_id: ROLE_ORG_ADMIN if admin.subject_id == owner else ROLE_ADMIN
            for admin in admins
        }
        organization.updated_at = utc_now()
        await record_event(
            session=session,
            organization_id=organization.id,
            actor_type="system",
            actor_id="backfill_admin_roles",
            event_type="roles.backfilled",
            outcome="success",
            resource_type="organization",
            resource_id=organization.id,
            metadata={"owner": owner, "admin_count": len(admins)},
        )
        updated += 1
        logger.info("backfill_owner_assigned organization_id=%s owner=%s", organization.id, owner)

    with store_errors("backfill_admin_roles"):
        await session.commit()
    return updated
