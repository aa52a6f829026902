"""Replay guard: reject events older than the freshness window.

A captured, correctly signed body could otherwise be replayed forever.
The window (default 300s) absorbs normal delivery latency.
"""

from __future__ import annotations

import logging
import time

from clientflow.webhooks.models import InboundEvent
from clientflow.webhooks.outcomes import GateOutcome

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENT_AGE_SECONDS = 300


def event_age_seconds(event: InboundEvent, now: float | None = None) -> float:
    current = time.time() if now is None else now
    return current - event.created_at.timestamp()


def check_freshness(
    event: InboundEvent,
    max_age_seconds: int = DEFAULT_MAX_EVENT_AGE_SECONDS,
    now: float | None = None,
) -> GateOutcome:
    """Return EXPIRED if the event's creation time is beyond the window."""
    age = event_age_seconds(event, now)
    if age > max_age_seconds:
        logger.warning(
            "SECURITY rejected expired webhook event id=%s type=%s age=%ds max=%ds",
            event.id,
            event.type,
            int(age),
            max_age_seconds,
        )
        return GateOutcome.expired(
            f"Event is too old ({int(age)}s), possible replay attack",
            event=event,
        )
    return GateOutcome.verified(event)
