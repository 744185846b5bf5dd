from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Mapping

from quotagate.core.errors import InvalidConfigurationError, UnknownPlanError


logger = logging.getLogger(__name__)

# Stored limit value meaning "no cap"; resolved limits use None for the same thing.
UNLIMITED = -1

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_PREMIUM = "premium"
PLAN_ENTERPRISE = "enterprise"


class Capability(str, Enum):
    ALERTS = "alerts"
    GROUPS = "groups"
    ADMINS = "admins"

    @property
    def administrative(self) -> bool:
        # Adding admins changes who may manage the organization, so it needs a role check.
        return self is Capability.ADMINS

    @classmethod
    def parse(cls, value: "Capability | str") -> "Capability":
        if isinstance(value, Capability):
            return value
        resolved = _ACTION_ALIASES.get(value)
        if resolved is None:
            try:
                resolved = cls(value)
            except ValueError as exc:
                raise InvalidConfigurationError(f"Unknown capability: {value!r}") from exc
        return resolved


_ACTION_ALIASES: dict[str, Capability] = {
    "create_alert": Capability.ALERTS,
    "createAlert": Capability.ALERTS,
    "create_group": Capability.GROUPS,
    "createGroup": Capability.GROUPS,
    "add_admin": Capability.ADMINS,
    "addAdmin": Capability.ADMINS,
}


@dataclass(frozen=True)
class PlanTier:
    # Static tier definition; limits use UNLIMITED for uncapped capabilities.
    name: str
    display_name: str
    monthly_price: int
    max_admins: int
    max_groups: int
    max_alerts_per_month: int
    features: frozenset[str] = field(default_factory=frozenset)

    def limits(self) -> dict[Capability, int]:
        return {
            Capability.ALERTS: self.max_alerts_per_month,
            Capability.GROUPS: self.max_groups,
            Capability.ADMINS: self.max_admins,
        }


PLAN_CATALOG: dict[str, PlanTier] = {
    PLAN_FREE: PlanTier(
        name=PLAN_FREE,
        display_name="Free",
        monthly_price=0,
        max_admins=1,
        max_groups=2,
        max_alerts_per_month=25,
        features=frozenset({"basic_web_access", "basic_push_notifications", "email_support"}),
    ),
    PLAN_PRO: PlanTier(
        name=PLAN_PRO,
        display_name="Pro",
        monthly_price=10,
        max_admins=2,
        max_groups=5,
        max_alerts_per_month=100,
        features=frozenset(
            {"full_web_access", "advanced_push_notifications", "priority_email_support", "mobile_app_access"}
        ),
    ),
    PLAN_PREMIUM: PlanTier(
        name=PLAN_PREMIUM,
        display_name="Premium",
        monthly_price=25,
        max_admins=10,
        max_groups=25,
        max_alerts_per_month=500,
        features=frozenset(
            {
                "full_web_access",
                "premium_push_notifications",
                "priority_phone_email_support",
            }
        ),
    ),
    PLAN_ENTERPRISE: PlanTier(
        name=PLAN_ENTERPRISE,
        display_name="Enterprise",
        monthly_price=50,
        max_admins=UNLIMITED,
        max_groups=UNLIMITED,
        max_alerts_per_month=UNLIMITED,
        features=frozenset(
            {
                "full_web_access",
                "premium_push_notifications",
                "priority_phone_email_support",
                "custom_integrations",
            }
        ),
    ),
}

# Ordered cheapest to most capable for upgrade suggestions.
PLAN_ORDER: tuple[str, ...] = (PLAN_FREE, PLAN_PRO, PLAN_PREMIUM, PLAN_ENTERPRISE)


def validate_limit(value: Any, *, field_name: str = "limit") -> int:
    # Accept non-negative caps or the unbounded sentinel; anything else is a config error.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigurationError(f"{field_name} must be an integer, got {value!r}")
    if value < 0 and value != UNLIMITED:
        raise InvalidConfigurationError(
            f"{field_name} must be >= 0 or {UNLIMITED} for unbounded, got {value}"
        )
    return value


def validate_limits(limits: Mapping[str, Any] | None) -> dict[str, int]:
    # Normalize capability keys and reject unknown capabilities up front.
    validated: dict[str, int] = {}
    for raw_key, raw_value in (limits or {}).items():
        capability = Capability.parse(raw_key)
        validated[capability.value] = validate_limit(raw_value, field_name=f"limits.{capability.value}")
    return validated


def to_resolved_limit(value: int) -> int | None:
    # Map the stored sentinel onto None so callers never compare against -1.
    return None if value == UNLIMITED else value


def get_plan(plan_type: str) -> PlanTier:
    plan = PLAN_CATALOG.get(plan_type)
    if plan is None:
        raise UnknownPlanError(plan_type)
    return plan


def list_plans() -> list[PlanTier]:
    return [PLAN_CATALOG[name] for name in PLAN_ORDER]


def resolve_plan_type(plan_type: str | None) -> str:
    # Fall back to free for unknown or missing plan names, as billing data can lag the catalog.
    if plan_type in PLAN_CATALOG:
        return plan_type  # type: ignore[return-value]
    if plan_type is not None:
        logger.warning("plan_type_unknown plan_type=%s fallback=%s", plan_type, PLAN_FREE)
    return PLAN_FREE


def limit_for(plan_type: str, capability: Capability | str) -> int | None:
    """Return the per-period limit for a capability, or None when unbounded.

    Raises UnknownPlanError for plan names outside the catalog. A capability
    the tier does not define, or a name outside the catalog, resolves to 0 so
    unknown actions fail closed.
    """
    plan = get_plan(plan_type)
    try:
        resolved = Capability.parse(capability)
    except InvalidConfigurationError:
        return 0
    value = plan.limits().get(resolved)
    if value is None:
        return 0
    return to_resolved_limit(value)


def next_plan_up(plan_type: str) -> str | None:
    resolved = resolve_plan_type(plan_type)
    index = PLAN_ORDER.index(resolved)
    if index + 1 >= len(PLAN_ORDER):
        return None
    return PLAN_ORDER[index + 1]


def _validate_catalog(catalog: Mapping[str, PlanTier]) -> None:
    # Fail fast at import if a tier carries malformed limits.
    missing = set(PLAN_ORDER) - set(catalog)
    if missing:
        raise InvalidConfigurationError(f"Plan catalog missing tiers: {sorted(missing)}")
    for name, plan in catalog.items():
        if plan.name != name:
            raise InvalidConfigurationError(f"Plan key {name!r} does not match tier name {plan.name!r}")
        if plan.monthly_price < 0:
            raise InvalidConfigurationError(f"Plan {name!r} has a negative price")
        for capability, value in plan.limits().items():
            validate_limit(value, field_name=f"{name}.{capability.value}")


_validate_catalog(PLAN_CATALOG)
