from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from quotagate.core.config import get_settings
from quotagate.core.errors import InvalidConfigurationError, InvalidSignatureError
from quotagate.services.billing_events import (
    build_billing_signature,
    parse_billing_event,
    plan_for_price,
    verify_billing_signature,
)


def test_build_billing_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b'{"event":"test"}'
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert build_billing_signature(secret, payload) == expected


def test_verify_billing_signature_rejects_mismatch() -> None:
    payload = b'{"event":"test"}'
    verify_billing_signature("s3cret", payload, build_billing_signature("s3cret", payload))
    with pytest.raises(InvalidSignatureError):
        verify_billing_signature("s3cret", payload, build_billing_signature("other", payload))
    with pytest.raises(InvalidSignatureError):
        verify_billing_signature("s3cret", payload, None)


def test_parse_billing_event_requires_configured_secret(monkeypatch) -> None:
    monkeypatch.delenv("BILLING_WEBHOOK_SECRET", raising=False)
    get_settings.cache_clear()
    with pytest.raises(InvalidConfigurationError):
        parse_billing_event(b"{}", "sig")


def test_parse_billing_event_validates_payload(monkeypatch) -> None:
    monkeypatch.setenv("BILLING_WEBHOOK_SECRET", "whsec")
    get_settings.cache_clear()
    body = json.dumps(
        {"id": "evt_1", "type": "subscription.updated", "data": {"customer_id": "cus_1", "status": "active"}}
    ).encode("utf-8")
    event = parse_billing_event(body, build_billing_signature("whsec", body))
    assert event.type == "subscription.updated"
    assert event.data.customer_id == "cus_1"

    malformed = b'{"id": "evt_2"}'
    with pytest.raises(InvalidConfigurationError):
        parse_billing_event(malformed, build_billing_signature("whsec", malformed))


def test_plan_for_price_maps_known_prices_only() -> None:
    assert plan_for_price("price_pro_monthly") == "pro"
    assert plan_for_price("price_unknown") == "free"
    assert plan_for_price(None) == "free"
