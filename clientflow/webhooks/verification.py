"""Webhook signature verification — constant-time HMAC over the raw body.

Security contract:
- Verification runs on the raw bytes before any JSON parsing
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret -> verification always fails (fail-closed)
- Every failure mode returns the same outcome and reason, so a caller
  cannot tell a forged body from a forged signature
- Event freshness is checked separately (see replay.py)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from pydantic import ValidationError

from clientflow.webhooks.models import InboundEvent, StripeEventEnvelope
from clientflow.webhooks.outcomes import GateOutcome

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

_INVALID_SIGNATURE = "Invalid signature"
_INVALID_PAYLOAD = "Invalid payload"


def _parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``t=<ts>,v1=<sig>[,v1=<sig>...]`` into (timestamp, v1 signatures)."""
    timestamp = None
    signatures: list[str] = []
    for item in header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``<timestamp>.<body>``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> GateOutcome:
    """Verify a webhook signature (Stripe v1 scheme).

    Args:
        body: Raw request body bytes
        signature_header: Value of the Stripe-Signature header
        secret: Shared webhook signing secret

    Returns:
        VERIFIED outcome (without an event) or INVALID
    """
    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
        return GateOutcome.invalid(_INVALID_SIGNATURE)
    if not signature_header:
        return GateOutcome.invalid(_INVALID_SIGNATURE)

    timestamp, signatures = _parse_signature_header(signature_header)
    if not timestamp or not signatures:
        return GateOutcome.invalid(_INVALID_SIGNATURE)

    expected = compute_signature(secret, timestamp, body)
    # Multiple v1 entries appear during secret rotation
    if any(hmac.compare_digest(expected, sig) for sig in signatures):
        return GateOutcome.verified()
    return GateOutcome.invalid(_INVALID_SIGNATURE)


def parse_event(body: bytes) -> GateOutcome:
    """Parse a verified body into an InboundEvent.

    Only call this after verify_signature() passed.
    """
    try:
        envelope = StripeEventEnvelope.model_validate(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        logger.warning("Signed webhook body is not a valid event envelope")
        return GateOutcome.invalid(_INVALID_PAYLOAD)
    return GateOutcome.verified(InboundEvent.from_envelope(envelope))


def verify_and_parse(body: bytes, signature_header: str | None, secret: str) -> GateOutcome:
    """Signature gate followed by envelope parsing."""
    outcome = verify_signature(body, signature_header, secret)
    if not outcome.passed:
        return outcome
    return parse_event(body)
