"""Webhook data types: inbound events, ledger rows, dead letters, results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_EVENT_TIMESTAMP = 253_402_300_799


class EventData(BaseModel):
    object: dict[str, Any] = Field(default_factory=dict)


class StripeEventEnvelope(BaseModel):
    """Minimal shape of a provider event body; extra fields are ignored."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int = Field(ge=0, le=MAX_EVENT_TIMESTAMP)
    data: EventData = Field(default_factory=EventData)

    model_config = {"extra": "ignore"}


@dataclass(frozen=True)
class InboundEvent:
    """A verified event for the lifetime of one request."""

    id: str
    type: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_envelope(cls, envelope: StripeEventEnvelope) -> InboundEvent:
        return cls(
            id=envelope.id,
            type=envelope.type,
            created_at=datetime.fromtimestamp(envelope.created, tz=timezone.utc),
            payload=envelope.data.object,
        )


@dataclass
class IdempotencyRecord:
    event_id: str
    event_type: str
    processed_at: datetime
    outcome: str = "processing"  # processing | processed | failed


@dataclass(frozen=True)
class DeadLetterRecord:
    """A handler failure captured for manual replay. Never mutated."""

    event_id: str
    event_type: str
    error_message: str
    error_stack: str
    payload_snapshot: dict[str, Any]
    recorded_at: datetime
    id: int | None = None


@dataclass
class HandlerResult:
    success: bool
    message: str


@dataclass
class ProcessingResult:
    """What the HTTP layer returns to the provider."""

    status_code: int
    processed: bool
    message: str
    processing_time_ms: int = 0

    def to_body(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "message": self.message,
            "processingTimeMs": self.processing_time_ms,
        }
