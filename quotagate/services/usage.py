from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.errors import InvalidConfigurationError
from quotagate.domain.models import UsageLedgerEntry
from quotagate.persistence.db import store_errors
from quotagate.services.plans import Capability


logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = {
    Capability.ALERTS: UsageLedgerEntry.alerts,
    Capability.GROUPS: UsageLedgerEntry.groups,
    Capability.ADMINS: UsageLedgerEntry.admins,
}


@dataclass(frozen=True)
class IncrementResult:
    # granted=False leaves the ledger untouched; count is the value after the attempt.
    granted: bool
    count: int


def period_key(now: datetime) -> str:
    # Bucket by calendar month in UTC so every caller rolls over at the same instant.
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    utc = now.astimezone(timezone.utc)
    return f"{utc.year:04d}-{utc.month:02d}"


def _counter_column(capability: Capability | str):
    return _COUNTER_COLUMNS[Capability.parse(capability)]


def _insert_missing_entry(session: AsyncSession, subject_id: str, key: str, now: datetime):
    # Create the period row lazily; concurrent creators race harmlessly on the primary key.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = pg_insert
    elif dialect == "sqlite":
        insert_fn = sqlite_insert
    else:
        raise InvalidConfigurationError(f"Unsupported usage ledger dialect: {dialect}")
    return (
        insert_fn(UsageLedgerEntry)
        .values(
            subject_id=subject_id,
            period_key=key,
            alerts=0,
            groups=0,
            admins=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["subject_id", "period_key"])
    )


async def get_usage_entry(
    session: AsyncSession, subject_id: str, now: datetime
) -> UsageLedgerEntry | None:
    with store_errors("get_usage_entry"):
        result = await session.execute(
            select(UsageLedgerEntry).where(
                UsageLedgerEntry.subject_id == subject_id,
                UsageLedgerEntry.period_key == period_key(now),
            )
            # Counters move through bulk UPDATEs, so refresh any instance already in the session.
            .execution_options(populate_existing=True)
        )
    return result.scalar_one_or_none()


async def current_count(
    session: AsyncSession, subject_id: str, capability: Capability | str, now: datetime
) -> int:
    column = _counter_column(capability)
    with store_errors("current_count"):
        result = await session.execute(
            select(column).where(
                UsageLedgerEntry.subject_id == subject_id,
                UsageLedgerEntry.period_key == period_key(now),
            )
        )
    value = result.scalar_one_or_none()
    return int(value or 0)


async def try_increment(
    session: AsyncSession,
    subject_id: str,
    capability: Capability | str,
    now: datetime,
    limit: int | None,
) -> IncrementResult:
    """Atomically consume one unit of quota for the subject's current period.

    The check and the write are a single conditional UPDATE, so two callers
    racing for the last slot cannot both succeed. ``limit=None`` is unbounded
    and always increments.
    """
    if limit is not None and limit < 0:
        raise InvalidConfigurationError(f"Resolved limit must be >= 0 or None, got {limit}")
    column = _counter_column(capability)
    key = period_key(now)

    stmt = update(UsageLedgerEntry).where(
        UsageLedgerEntry.subject_id == subject_id,
        UsageLedgerEntry.period_key == key,
    )
    if limit is not None:
        stmt = stmt.where(column < limit)
    stmt = (
        stmt.values({column: column + 1, UsageLedgerEntry.updated_at: now})
        .returning(column)
        .execution_options(synchronize_session=False)
    )

    in_transaction = session.in_transaction()
    # Use a nested transaction when prior reads have already opened one.
    tx_context = session.begin_nested() if in_transaction else session.begin()
    with store_errors("try_increment"):
        async with tx_context:
            await session.execute(_insert_missing_entry(session, subject_id, key, now))
            new_count = (await session.execute(stmt)).scalar_one_or_none()
        if in_transaction:
            # Commit the increment when we piggyback on an existing transaction.
            await session.commit()

    if new_count is None:
        used = await current_count(session, subject_id, capability, now)
        logger.info(
            "usage_increment_refused subject_id=%s capability=%s period=%s used=%s limit=%s",
            subject_id,
            Capability.parse(capability).value,
            key,
            used,
            limit,
        )
        return IncrementResult(granted=False, count=used)
    return IncrementResult(granted=True, count=int(new_count))


async def list_usage_history(session: AsyncSession, subject_id: str) -> list[UsageLedgerEntry]:
    # Past periods are append-only history; return them oldest first.
    with store_errors("list_usage_history"):
        result = await session.execute(
            select(UsageLedgerEntry)
            .where(UsageLedgerEntry.subject_id == subject_id)
            .order_by(UsageLedgerEntry.period_key)
            .execution_options(populate_existing=True)
        )
    return list(result.scalars().all())
