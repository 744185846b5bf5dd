from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import logging

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from quotagate.core.config import get_settings
from quotagate.core.errors import InvalidConfigurationError, InvalidSignatureError
from quotagate.domain.models import Subscription
from quotagate.persistence.db import store_errors
from quotagate.services.audit import record_event
from quotagate.services.plans import PLAN_FREE, resolve_plan_type
from quotagate.services.subscriptions import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
    create_subscription,
    get_subscription,
    get_subscription_by_customer,
)


logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.completed"
EVENT_SUBSCRIPTION_CREATED = "subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "subscription.deleted"
EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"

# Upstream statuses outside this map (incomplete, incomplete_expired, ...) grant nothing.
_UPSTREAM_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "canceled": STATUS_CANCELED,
    "cancelled": STATUS_CANCELED,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
}


class BillingEventData(BaseModel):
    customer_id: str
    subject_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None
    status: str | None = None
    # Upstream periods arrive as unix seconds.
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool | None = None


class BillingEvent(BaseModel):
    id: str
    type: str
    data: BillingEventData


def build_billing_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for billing event payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_billing_signature(secret: str, payload: bytes, signature: str | None) -> None:
    if not signature:
        raise InvalidSignatureError("Missing billing signature")
    expected = build_billing_signature(secret, payload)
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("Billing signature mismatch")


def parse_billing_event(payload: bytes, signature: str | None) -> BillingEvent:
    # Reject unsigned or tampered events before any subscription state changes.
    secret = get_settings().billing_webhook_secret
    if not secret:
        raise InvalidConfigurationError("billing_webhook_secret is not configured")
    verify_billing_signature(secret, payload, signature)
    try:
        return BillingEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise InvalidConfigurationError(f"Malformed billing event: {exc.error_count()} errors") from exc


def plan_for_price(price_id: str | None) -> str:
    # Unknown price ids map to free rather than failing the webhook.
    if price_id is None:
        return PLAN_FREE
    plan_type = get_settings().billing_price_plan_map.get(price_id)
    if plan_type is None:
        logger.warning("billing_price_unmapped price_id=%s", price_id)
        return PLAN_FREE
    return resolve_plan_type(plan_type)


def _map_upstream_status(status: str) -> str:
    mapped = _UPSTREAM_STATUS_MAP.get(status)
    if mapped is None:
        logger.warning("billing_status_unmapped status=%s fallback=%s", status, STATUS_PAST_DUE)
        return STATUS_PAST_DUE
    return mapped


def _from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


async def _find_record(session: AsyncSession, data: BillingEventData) -> Subscription | None:
    if data.subject_id:
        record = await get_subscription(session, data.subject_id)
        if record is not None:
            return record
    return await get_subscription_by_customer(session, data.customer_id)


async def apply_billing_event(session: AsyncSession, event: BillingEvent) -> Subscription | None:
    """Apply an upstream billing event to the subject's subscription record.

    Returns the updated record, or None when the event is ignored (unknown
    type or no matching subscription).
    """
    data = event.data
    if event.type in (EVENT_CHECKOUT_COMPLETED, EVENT_SUBSCRIPTION_CREATED):
        if not data.subject_id:
            logger.error("billing_event_missing_subject event_id=%s type=%s", event.id, event.type)
            return None
        return await create_subscription(
            session,
            subject_id=data.subject_id,
            plan_type=plan_for_price(data.price_id),
            current_period_start=_from_epoch(data.current_period_start),
            current_period_end=_from_epoch(data.current_period_end),
            billing_customer_id=data.customer_id,
            billing_subscription_id=data.subscription_id,
            actor_id="billing",
        )

    if event.type not in (
        EVENT_SUBSCRIPTION_UPDATED,
        EVENT_SUBSCRIPTION_DELETED,
        EVENT_PAYMENT_SUCCEEDED,
        EVENT_PAYMENT_FAILED,
    ):
        logger.info("billing_event_ignored event_id=%s type=%s", event.id, event.type)
        return None

    record = await _find_record(session, data)
    if record is None:
        logger.error("billing_event_unmatched event_id=%s customer_id=%s", event.id, data.customer_id)
        return None

    if event.type == EVENT_SUBSCRIPTION_UPDATED:
        # Fields absent from the event keep their stored values.
        if data.price_id is not None:
            record.plan_type = plan_for_price(data.price_id)
        if data.status is not None:
            record.status = _map_upstream_status(data.status)
        # A moved period end is the new billing cycle.
        if data.current_period_start is not None:
            record.current_period_start = _from_epoch(data.current_period_start)
        if data.current_period_end is not None:
            record.current_period_end = _from_epoch(data.current_period_end)
        if data.cancel_at_period_end is not None:
            record.cancel_at_period_end = data.cancel_at_period_end
    elif event.type == EVENT_SUBSCRIPTION_DELETED:
        record.status = STATUS_CANCELED
        record.cancel_at_period_end = True
    elif event.type == EVENT_PAYMENT_SUCCEEDED:
        record.status = STATUS_ACTIVE
    else:
        record.status = STATUS_PAST_DUE
    record.updated_at = datetime.now(timezone.utc)

    await record_event(
        session=session,
        organization_id=None,
        actor_type="system",
        actor_id="billing",
        event_type=f"subscription.{event.type}",
        outcome="success",
        resource_type="subscription",
        resource_id=record.subject_id,
        metadata={"event_id": event.id, "status": record.status, "plan_type": record.plan_type},
    )
    with store_errors("apply_billing_event"):
        await session.commit()
    logger.info(
        "billing_event_applied event_id=%s type=%s subject_id=%s status=%s",
        event.id,
        event.type,
        record.subject_id,
        record.status,
    )
    return record
