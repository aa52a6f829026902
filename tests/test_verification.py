"""Tests for webhook signature verification and envelope parsing.

Tests:
- Stripe v1 HMAC verification over the raw body (constant-time)
- Fail-closed behaviour: missing secret, header, timestamp or signature
- Identical rejection for forged body and forged signature
- Envelope parsing after verification
"""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from clientflow.webhooks.models import MAX_EVENT_TIMESTAMP
from clientflow.webhooks.outcomes import GateStatus
from clientflow.webhooks.verification import (
    compute_signature,
    parse_event,
    verify_and_parse,
    verify_signature,
)
from payloads import WEBHOOK_SECRET, event_body, sign


class TestStripeSignature:
    def test_valid_signature(self):
        body = event_body()
        outcome = verify_signature(body, sign(body), WEBHOOK_SECRET)
        assert outcome.status is GateStatus.VERIFIED
        assert outcome.event is None  # body not parsed yet

    def test_wrong_secret_rejects(self):
        body = event_body()
        header = sign(body, secret="whsec_other")
        assert verify_signature(body, header, WEBHOOK_SECRET).status is GateStatus.INVALID

    def test_tampered_body_rejects(self):
        body = event_body()
        header = sign(body)
        tampered = body.replace(b"evt_123", b"evt_999")
        assert verify_signature(tampered, header, WEBHOOK_SECRET).status is GateStatus.INVALID

    def test_rotated_secret_second_v1_accepted(self):
        body = event_body()
        ts = "1700000000"
        good = compute_signature(WEBHOOK_SECRET, ts, body)
        header = f"t={ts},v1={'0' * 64},v1={good}"
        assert verify_signature(body, header, WEBHOOK_SECRET).passed

    @pytest.mark.parametrize(
        "header",
        [None, "", "garbage", "v1=abc", "t=1700000000", "t=1700000000,v0=abc", "t=,v1="],
    )
    def test_malformed_header_rejects(self, header):
        outcome = verify_signature(event_body(), header, WEBHOOK_SECRET)
        assert outcome.status is GateStatus.INVALID

    def test_missing_secret_rejects(self):
        """No secret configured -> always reject (fail-closed)."""
        body = event_body()
        assert verify_signature(body, sign(body, secret=""), "").status is GateStatus.INVALID

    def test_forged_body_and_forged_signature_indistinguishable(self):
        body = event_body()
        header = sign(body)
        forged_body = verify_signature(body + b" ", header, WEBHOOK_SECRET)
        forged_sig = verify_signature(body, header[:-4] + "0000", WEBHOOK_SECRET)
        assert forged_body == forged_sig

    def test_timestamp_age_is_not_checked_here(self):
        """Freshness belongs to the replay guard, not the verifier."""
        body = event_body()
        header = sign(body, timestamp=1)
        assert verify_signature(body, header, WEBHOOK_SECRET).passed

    def test_uses_constant_time_compare(self):
        body = event_body()
        with patch("clientflow.webhooks.verification.hmac.compare_digest", return_value=False) as cmp:
            outcome = verify_signature(body, sign(body), WEBHOOK_SECRET)
        assert cmp.called
        assert not outcome.passed

    def test_body_not_parsed_before_verification(self):
        with patch("clientflow.webhooks.verification.json.loads") as loads:
            verify_and_parse(b"{not json", "t=1,v1=bad", WEBHOOK_SECRET)
        loads.assert_not_called()


class TestParseEvent:
    def test_parses_envelope(self):
        outcome = parse_event(event_body(created=1_700_000_000, obj={"id": "sub_1"}))
        assert outcome.passed
        event = outcome.event
        assert event.id == "evt_123"
        assert event.type == "customer.subscription.created"
        assert event.created_at.timestamp() == 1_700_000_000
        assert event.payload == {"id": "sub_1"}

    @pytest.mark.parametrize(
        "body",
        [
            b"{not json",
            b"\xff\xfe",
            json.dumps({"type": "x", "created": 1}).encode(),
            json.dumps({"id": "", "type": "x", "created": 1}).encode(),
            json.dumps({"id": "evt_1", "type": "x", "created": "yesterday"}).encode(),
            json.dumps({"id": "evt_1", "type": "x", "created": 10**20}).encode(),
            json.dumps({"id": "evt_1", "type": "x", "created": -1}).encode(),
        ],
    )
    def test_invalid_envelope(self, body):
        outcome = parse_event(body)
        assert outcome.status is GateStatus.INVALID
        assert outcome.reason == "Invalid payload"

    def test_latest_representable_created_parses(self):
        outcome = parse_event(event_body(created=MAX_EVENT_TIMESTAMP))
        assert outcome.status is GateStatus.VERIFIED
        assert outcome.event.created_at.year == 9999

    def test_verify_and_parse_signed_garbage(self):
        body = b"[1, 2, 3]"
        outcome = verify_and_parse(body, sign(body), WEBHOOK_SECRET)
        assert outcome.status is GateStatus.INVALID
