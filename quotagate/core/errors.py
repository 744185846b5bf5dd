from __future__ import annotations


class QuotaGateError(Exception):
    """Base error for quotagate."""


class NotFoundError(QuotaGateError):
    """Subscription, override, profile or organization record is absent."""


class InvalidConfigurationError(QuotaGateError):
    """Malformed plan or limit data; rejected at load or write time."""


class UnknownPlanError(InvalidConfigurationError):
    """Plan type is not one of the catalog tiers."""

    def __init__(self, plan_type: str) -> None:
        self.plan_type = plan_type
        super().__init__(f"Unknown plan type: {plan_type!r}")


class NotAuthorizedError(QuotaGateError):
    """Acting subject lacks the role required for the operation."""


class QuotaExceededError(QuotaGateError):
    """Capability quota for the current period is used up."""

    def __init__(self, capability: str, limit: int | None, used: int) -> None:
        self.capability = capability
        self.limit = limit
        self.used = used
        super().__init__(f"Quota exceeded for {capability}: {used}/{limit}")


class StoreUnavailableError(QuotaGateError):
    """Backing store timed out or refused the connection; callers may retry."""


class InvalidSignatureError(QuotaGateError):
    """Billing event signature did not match the shared secret."""
