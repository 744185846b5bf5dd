from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from quotagate.core.config import get_settings

if TYPE_CHECKING:
    from quotagate.services.resolver import EntitlementDecision


logger = logging.getLogger(__name__)

EVENT_SOFT_CAP_REACHED = "quota.soft_cap_reached"
EVENT_QUOTA_EXCEEDED = "quota.exceeded"

SIGNATURE_HEADER = "X-Quota-Signature"
EVENT_HEADER = "X-Quota-Event"


@dataclass(frozen=True)
class DeliveryResult:
    # Summarize dispatcher delivery attempts for logging and tests.
    sent: bool
    status_code: int | None
    message: str


def build_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures so the dispatcher can authenticate events.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_event_payload(
    *,
    event_type: str,
    subject_id: str,
    organization_id: str,
    decision: "EntitlementDecision",
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "subject_id": subject_id,
        "organization_id": organization_id,
        "capability": decision.capability_name,
        "used": decision.used,
        "limit": decision.limit,
        "plan_type": decision.plan_type,
        "source": decision.source,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def send_event(
    event_type: str,
    payload: dict[str, Any],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryResult:
    # Post signed events with a short timeout; the dispatcher owns delivery to users.
    settings = get_settings()
    if not settings.notify_webhook_enabled:
        return DeliveryResult(sent=False, status_code=None, message="Notifications are disabled")
    if not settings.notify_webhook_url or not settings.notify_webhook_secret:
        logger.warning("notify_webhook_missing_config")
        return DeliveryResult(sent=False, status_code=None, message="Notifications are not configured")

    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: build_signature(settings.notify_webhook_secret, body),
        EVENT_HEADER: event_type,
    }
    timeout = settings.notify_webhook_timeout_ms / 1000.0
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.post(settings.notify_webhook_url, content=body, headers=headers)
    if response.status_code >= 400:
        return DeliveryResult(
            sent=False,
            status_code=response.status_code,
            message=f"Dispatcher responded with status {response.status_code}",
        )
    return DeliveryResult(sent=True, status_code=response.status_code, message="Event delivered")


async def notify_quota_event(
    *,
    event_type: str,
    subject_id: str,
    organization_id: str,
    decision: "EntitlementDecision",
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryResult:
    # Never let dispatcher failures change a quota decision.
    payload = build_event_payload(
        event_type=event_type,
        subject_id=subject_id,
        organization_id=organization_id,
        decision=decision,
    )
    try:
        result = await send_event(event_type, payload, transport=transport)
    except httpx.HTTPError as exc:
        logger.warning("notify_webhook_failed event_type=%s", event_type, exc_info=exc)
        return DeliveryResult(sent=False, status_code=None, message=str(exc))
    if not result.sent and result.status_code is not None:
        logger.warning(
            "notify_webhook_rejected event_type=%s status_code=%s", event_type, result.status_code
        )
    return result
