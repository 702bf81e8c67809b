"""Tests for structured logging and secret redaction."""
import json
import logging

from storytime.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    latency_bucket_ms,
    log_event,
    redact,
    request_id_ctx_var,
)


def _record(msg, **extra):
    record = logging.LogRecord("storytime", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_masks_stripe_secrets_and_tokens():
    text = "key=sk_live_abc123 secret=whsec_xyz_9 auth=Bearer eyJhbGciOi.payload.sig"
    cleaned = redact(text)
    assert "sk_live_abc123" not in cleaned
    assert "whsec_xyz_9" not in cleaned
    assert "eyJhbGciOi" not in cleaned
    assert cleaned.count("[redacted]") == 3


def test_redact_leaves_stripe_ids_alone():
    assert redact("customer cus_123 price price_1R88J5") == "customer cus_123 price price_1R88J5"


def test_json_formatter_emits_structured_fields():
    record = _record("Entitlement updated", request_id="rid-1", user_id="user_alice",
                     event_type="checkout.session.completed", event_id="evt_1")
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Entitlement updated"
    assert payload["request_id"] == "rid-1"
    assert payload["user_id"] == "user_alice"
    assert payload["event_type"] == "checkout.session.completed"
    assert "error_code" not in payload


def test_pretty_formatter_includes_request_and_event():
    line = PrettyFormatter().format(_record("hello", request_id="rid-2", event_type="invoice.payment_succeeded"))
    assert "[rid=rid-2]" in line
    assert "[invoice.payment_succeeded]" in line
    assert line.endswith("hello")


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(3) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def test_log_event_uses_context_request_id(caplog):
    token = request_id_ctx_var.set("rid-ctx")
    try:
        with caplog.at_level(logging.INFO, logger="storytime"):
            log_event("info", "Entitlement updated", user_id="user_alice", event_id="evt_9",
                      extra={"updates": {"minutes_used": 0}})
    finally:
        request_id_ctx_var.reset(token)

    record = caplog.records[-1]
    assert record.request_id == "rid-ctx"
    assert record.event_id == "evt_9"
    assert record.updates == "{'minutes_used': 0}"
