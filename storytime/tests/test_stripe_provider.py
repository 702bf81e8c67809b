"""
Stripe provider tests.

Webhook signatures are computed the way Stripe signs them, so these tests
exercise the real stripe verification code without any network access.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest
import stripe

from storytime.features.billing.provider import (
    BillingProviderError,
    BillingSignatureError,
    BillingWebhookError,
)
from storytime.features.billing.stripe_provider import (
    StripeProvider,
    object_id,
    parse_subscription,
    timestamp_to_datetime,
)
from storytime.tests.fakes import WEBHOOK_SECRET


class ApiObject(dict):
    """Stands in for a StripeObject: attribute and subscript access."""

    def __getattr__(self, name):
        return self[name]


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


@pytest.fixture
def provider():
    return StripeProvider(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        api_version="2024-04-10",
    )


def _payload(**overrides):
    event = {
        "id": "evt_1",
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_1", "customer": "cus_1", "status": "active"}},
    }
    event.update(overrides)
    return json.dumps(event)


# -- webhook verification ---------------------------------------------------


def test_valid_signature_parses_event(provider):
    payload = _payload()
    event = provider.parse_webhook(payload.encode("utf-8"), sign(payload))

    assert event.event_id == "evt_1"
    assert event.event_type == "customer.subscription.updated"
    assert event.data_object["customer"] == "cus_1"


def test_signature_with_wrong_secret_rejected(provider):
    payload = _payload()
    with pytest.raises(BillingSignatureError):
        provider.parse_webhook(payload.encode("utf-8"), sign(payload, secret="whsec_other"))


def test_tampered_body_rejected(provider):
    payload = _payload()
    signature = sign(payload)
    tampered = payload.replace("active", "canceled")
    with pytest.raises(BillingSignatureError):
        provider.parse_webhook(tampered.encode("utf-8"), signature)


def test_stale_signature_rejected(provider):
    payload = _payload()
    old = int(time.time()) - 3600
    with pytest.raises(BillingSignatureError):
        provider.parse_webhook(payload.encode("utf-8"), sign(payload, timestamp=old))


@pytest.mark.parametrize("signature", [None, ""])
def test_missing_signature_rejected(provider, signature):
    with pytest.raises(BillingSignatureError):
        provider.parse_webhook(_payload().encode("utf-8"), signature)


def test_missing_webhook_secret_is_configuration_error():
    provider = StripeProvider(secret_key="sk_test_123", webhook_secret=None)
    payload = _payload()
    with pytest.raises(BillingProviderError) as exc_info:
        provider.parse_webhook(payload.encode("utf-8"), sign(payload))
    assert not isinstance(exc_info.value, BillingWebhookError)


def test_signed_but_malformed_payload(provider):
    payload = "{not json"
    with pytest.raises(BillingWebhookError) as exc_info:
        provider.parse_webhook(payload.encode("utf-8"), sign(payload))
    assert not isinstance(exc_info.value, BillingSignatureError)


def test_signed_event_without_type_rejected(provider):
    payload = json.dumps({"id": "evt_1", "data": {"object": {}}})
    with pytest.raises(BillingWebhookError):
        provider.parse_webhook(payload.encode("utf-8"), sign(payload))


def test_provider_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider(secret_key="")


# -- subscription parsing ---------------------------------------------------


def test_parse_subscription_payload():
    snapshot = parse_subscription({
        "id": "sub_1",
        "customer": "cus_1",
        "status": "past_due",
        "current_period_end": 1795089600,
        "cancel_at_period_end": True,
        "items": {"data": [{"price": {"id": "price_super"}}]},
    })

    assert snapshot.subscription_id == "sub_1"
    assert snapshot.customer_id == "cus_1"
    assert snapshot.status == "past_due"
    assert snapshot.price_id == "price_super"
    assert snapshot.current_period_end == datetime(2026, 11, 19, 12, 0, tzinfo=timezone.utc)
    assert snapshot.cancel_at_period_end is True


def test_parse_subscription_period_from_item():
    snapshot = parse_subscription({
        "id": "sub_1",
        "customer": {"id": "cus_1", "object": "customer"},
        "status": "active",
        "items": {"data": [{"price": "price_starter", "current_period_end": 1795089600}]},
    })

    assert snapshot.customer_id == "cus_1"
    assert snapshot.price_id == "price_starter"
    assert snapshot.current_period_end == datetime(2026, 11, 19, 12, 0, tzinfo=timezone.utc)


def test_parse_subscription_without_items():
    snapshot = parse_subscription({"id": "sub_1", "customer": "cus_1", "status": "incomplete"})
    assert snapshot.price_id is None
    assert snapshot.current_period_end is None
    assert snapshot.cancel_at_period_end is False


def test_object_id_variants():
    assert object_id("cus_1") == "cus_1"
    assert object_id({"id": "cus_1"}) == "cus_1"
    assert object_id("") is None
    assert object_id(None) is None


def test_timestamp_to_datetime_is_utc():
    assert timestamp_to_datetime(0) is None
    assert timestamp_to_datetime(None) is None
    assert timestamp_to_datetime(1795089600).tzinfo == timezone.utc


# -- API calls (stripe client patched) --------------------------------------


def test_create_customer_passes_key_per_request(provider, monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return ApiObject(id="cus_new")

    monkeypatch.setattr(stripe.Customer, "create", fake_create)

    assert provider.create_customer("user_alice", "alice@example.com") == "cus_new"
    assert calls[0]["metadata"] == {"user_id": "user_alice"}
    assert calls[0]["email"] == "alice@example.com"
    assert calls[0]["api_key"] == "sk_test_123"
    assert calls[0]["stripe_version"] == "2024-04-10"


def test_create_customer_error_wrapped(provider, monkeypatch):
    def fake_create(**kwargs):
        raise stripe.StripeError("card declined")

    monkeypatch.setattr(stripe.Customer, "create", fake_create)

    with pytest.raises(BillingProviderError, match="customer creation failed"):
        provider.create_customer("user_alice")


def test_checkout_session_tagged_with_user(provider, monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return ApiObject(id="cs_live_1", url="https://checkout.stripe.com/c/cs_live_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    session = provider.create_checkout_session(
        customer_id="cus_1",
        price_id="price_starter",
        user_id="user_alice",
        success_url="https://storytime.test/ok",
        cancel_url="https://storytime.test/cancel",
    )

    assert session.session_id == "cs_live_1"
    assert session.url == "https://checkout.stripe.com/c/cs_live_1"
    kwargs = calls[0]
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_starter", "quantity": 1}]
    assert kwargs["client_reference_id"] == "user_alice"
    assert kwargs["subscription_data"] == {"metadata": {"user_id": "user_alice"}}


def test_retrieve_subscription_error_wrapped(provider, monkeypatch):
    def fake_retrieve(subscription_id, **kwargs):
        raise stripe.StripeError("No such subscription")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)

    with pytest.raises(BillingProviderError, match="sub_missing"):
        provider.retrieve_subscription("sub_missing")
