"""Entitlement resolution: decide whether a capability may be used right now.

The effective limit comes from an ordered chain of strategies (special-access
override, subject custom limits, entitled subscription, free tier); the first
strategy that produces a limit wins. Quota is consumed through the usage
ledger's atomic increment only after authorization and limit resolution.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.clock import utc_now
from quotagate.core.config import get_settings
from quotagate.core.errors import (
    InvalidConfigurationError,
    NotAuthorizedError,
    QuotaExceededError,
    UnknownPlanError,
)
from quotagate.services import notifications
from quotagate.services.audit import record_event
from quotagate.services.plans import PLAN_FREE, Capability, limit_for, resolve_plan_type, to_resolved_limit
from quotagate.services.profiles import get_profile
from quotagate.services.roles import ROLES, role_of
from quotagate.services.special_access import get_effective_override
from quotagate.services.subscriptions import get_subscription, is_currently_entitled
from quotagate.services.usage import try_increment


logger = logging.getLogger(__name__)

SOURCE_OVERRIDE = "special_access"
SOURCE_CUSTOM_LIMITS = "custom_limits"
SOURCE_SUBSCRIPTION = "subscription"
SOURCE_FREE = "free"

REASON_GRANTED = "granted"
REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_NOT_AUTHORIZED = "not_authorized"

UNBOUNDED = "unbounded"


@dataclass(frozen=True)
class ResolvedLimit:
    # limit=None means unbounded; plan_type is set when a catalog tier supplied the value.
    limit: int | None
    source: str
    plan_type: str | None = None


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    reason: str
    # Names outside the catalog stay as the raw string on fail-closed denials.
    capability: Capability | str
    remaining: int | None = None
    limit: int | None = None
    used: int | None = None
    source: str | None = None
    plan_type: str | None = None

    @property
    def capability_name(self) -> str:
        if isinstance(self.capability, Capability):
            return self.capability.value
        return self.capability

    @property
    def unbounded(self) -> bool:
        return self.allowed and self.limit is None

    def to_dict(self) -> dict[str, Any]:
        remaining: int | str | None = self.remaining
        if self.allowed and self.remaining is None:
            remaining = UNBOUNDED
        return {"allowed": self.allowed, "remaining": remaining, "reason": self.reason}

    def raise_for_denial(self) -> None:
        # Bridge to exception-based callers; denials are plain values otherwise.
        if self.allowed:
            return
        if self.reason == REASON_NOT_AUTHORIZED:
            raise NotAuthorizedError("Not authorized")
        raise QuotaExceededError(self.capability_name, self.limit, self.used or 0)


class LimitStrategy(Protocol):
    name: str

    async def try_resolve(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability,
        now: datetime,
    ) -> ResolvedLimit | None: ...


class SpecialAccessStrategy:
    name = SOURCE_OVERRIDE

    async def try_resolve(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability,
        now: datetime,
    ) -> ResolvedLimit | None:
        override = await get_effective_override(session, subject_id, organization_id, now)
        if override is None:
            return None
        value = (override.limits or {}).get(capability.value)
        if value is None:
            return None
        return ResolvedLimit(limit=to_resolved_limit(int(value)), source=self.name)


class CustomLimitsStrategy:
    name = SOURCE_CUSTOM_LIMITS

    async def try_resolve(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability,
        now: datetime,
    ) -> ResolvedLimit | None:
        profile = await get_profile(session, subject_id)
        if profile is None or not profile.has_custom_limits:
            return None
        value = (profile.custom_limits or {}).get(capability.value)
        if value is None:
            return None
        return ResolvedLimit(limit=to_resolved_limit(int(value)), source=self.name)


class SubscriptionStrategy:
    name = SOURCE_SUBSCRIPTION

    async def try_resolve(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability,
        now: datetime,
    ) -> ResolvedLimit | None:
        record = await get_subscription(session, subject_id)
        # Expired, past-due and canceled records cascade to the free tier.
        if record is None or not is_currently_entitled(record, now):
            return None
        try:
            limit = limit_for(record.plan_type, capability)
            plan_type = record.plan_type
        except UnknownPlanError:
            plan_type = resolve_plan_type(record.plan_type)
            limit = limit_for(plan_type, capability)
        return ResolvedLimit(limit=limit, source=self.name, plan_type=plan_type)


class FreeTierStrategy:
    name = SOURCE_FREE

    async def try_resolve(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability,
        now: datetime,
    ) -> ResolvedLimit | None:
        return ResolvedLimit(limit=limit_for(PLAN_FREE, capability), source=self.name, plan_type=PLAN_FREE)


def default_strategies() -> list[LimitStrategy]:
    return [SpecialAccessStrategy(), CustomLimitsStrategy(), SubscriptionStrategy(), FreeTierStrategy()]


class EntitlementResolver:
    def __init__(
        self,
        *,
        strategies: Sequence[LimitStrategy] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._strategies = list(strategies) if strategies is not None else default_strategies()
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or utc_now

    async def resolve_limit(
        self,
        *,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability | str,
        now: datetime | None = None,
    ) -> ResolvedLimit:
        parsed = _parse_capability(capability)
        if parsed is None:
            return ResolvedLimit(limit=0, source=SOURCE_FREE)
        capability = parsed
        now = now or self._time_provider()
        for strategy in self._strategies:
            resolved = await strategy.try_resolve(session, subject_id, organization_id, capability, now)
            if resolved is not None:
                return resolved
        # A chain without a terminal strategy fails closed.
        return ResolvedLimit(limit=0, source=SOURCE_FREE)

    async def check_and_consume(
        self,
        *,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        capability: Capability | str,
        acting_subject_id: str | None = None,
        now: datetime | None = None,
    ) -> EntitlementDecision:
        now = now or self._time_provider()
        actor = acting_subject_id or subject_id
        parsed = _parse_capability(capability)
        if parsed is None:
            # Names outside the catalog resolve to limit 0 and never reach the ledger.
            decision = EntitlementDecision(
                allowed=False,
                reason=REASON_QUOTA_EXCEEDED,
                capability=str(capability),
                remaining=0,
                limit=0,
                used=0,
                source=SOURCE_FREE,
            )
            await self._record_denial(session, subject_id, organization_id, actor, decision)
            return decision
        capability = parsed

        # Authorization comes first so unauthorized callers never touch quota.
        if capability.administrative:
            role = await role_of(session, organization_id, actor, lock=True)
            if role not in ROLES:
                decision = EntitlementDecision(
                    allowed=False, reason=REASON_NOT_AUTHORIZED, capability=capability
                )
                await self._record_denial(session, subject_id, organization_id, actor, decision)
                return decision

        resolved = await self.resolve_limit(
            session=session,
            subject_id=subject_id,
            organization_id=organization_id,
            capability=capability,
            now=now,
        )
        result = await try_increment(session, subject_id, capability, now, resolved.limit)

        if not result.granted:
            decision = EntitlementDecision(
                allowed=False,
                reason=REASON_QUOTA_EXCEEDED,
                capability=capability,
                remaining=0,
                limit=resolved.limit,
                used=result.count,
                source=resolved.source,
                plan_type=resolved.plan_type,
            )
            await self._record_denial(session, subject_id, organization_id, actor, decision)
            await notifications.notify_quota_event(
                event_type=notifications.EVENT_QUOTA_EXCEEDED,
                subject_id=subject_id,
                organization_id=organization_id,
                decision=decision,
            )
            return decision

        remaining = None if resolved.limit is None else max(resolved.limit - result.count, 0)
        decision = EntitlementDecision(
            allowed=True,
            reason=REASON_GRANTED,
            capability=capability,
            remaining=remaining,
            limit=resolved.limit,
            used=result.count,
            source=resolved.source,
            plan_type=resolved.plan_type,
        )
        logger.debug(
            "entitlement_granted subject_id=%s capability=%s source=%s used=%s limit=%s",
            subject_id,
            capability.value,
            resolved.source,
            result.count,
            resolved.limit,
        )
        if _crossed_soft_cap(decision, get_settings().soft_cap_ratio):
            await notifications.notify_quota_event(
                event_type=notifications.EVENT_SOFT_CAP_REACHED,
                subject_id=subject_id,
                organization_id=organization_id,
                decision=decision,
            )
        return decision

    async def _record_denial(
        self,
        session: AsyncSession,
        subject_id: str,
        organization_id: str,
        actor: str,
        decision: EntitlementDecision,
    ) -> None:
        logger.info(
            "entitlement_denied subject_id=%s organization_id=%s capability=%s reason=%s",
            subject_id,
            organization_id,
            decision.capability_name,
            decision.reason,
        )
        # Authorization denials log the actor only; nothing about the organization's state.
        metadata: dict[str, Any] = {"capability": decision.capability_name, "subject_id": subject_id}
        if decision.reason == REASON_QUOTA_EXCEEDED:
            metadata.update(
                {"limit": decision.limit, "used": decision.used, "source": decision.source}
            )
        await record_event(
            session=session,
            organization_id=organization_id,
            actor_type="subject",
            actor_id=actor,
            event_type=f"entitlement.{decision.reason}",
            outcome="failure",
            resource_type="quota",
            resource_id=decision.capability_name,
            metadata=metadata,
            error_code="QUOTA_EXCEEDED" if decision.reason == REASON_QUOTA_EXCEEDED else "AUTH_FORBIDDEN",
            commit=True,
            best_effort=True,
        )


def _parse_capability(capability: Capability | str) -> Capability | None:
    try:
        return Capability.parse(capability)
    except InvalidConfigurationError:
        logger.warning("capability_unknown capability=%s", capability)
        return None


def _crossed_soft_cap(decision: EntitlementDecision, ratio: float) -> bool:
    # Fire once per period: only the grant that first reaches the threshold counts.
    if decision.limit is None or decision.limit <= 0 or decision.used is None:
        return False
    threshold = decision.limit * ratio
    return decision.used >= threshold and (decision.used - 1) < threshold


_resolver: EntitlementResolver | None = None


def get_resolver() -> EntitlementResolver:
    # Cache the resolver for reuse across requests.
    global _resolver
    if _resolver is None:
        _resolver = EntitlementResolver()
    return _resolver


def reset_resolver() -> None:
    # Reset cached resolver for deterministic tests.
    global _resolver
    _resolver = None


async def check_and_consume(
    *,
    session: AsyncSession,
    subject_id: str,
    organization_id: str,
    capability: Capability | str,
    acting_subject_id: str | None = None,
    now: datetime | None = None,
) -> EntitlementDecision:
    return await get_resolver().check_and_consume(
        session=session,
        subject_id=subject_id,
        organization_id=organization_id,
        capability=capability,
        acting_subject_id=acting_subject_id,
        now=now,
    )
