"""Tagged results returned by the intake gates.

Each gate (signature, freshness, ledger claim) returns a ``GateOutcome``
instead of raising, and the processor switches on ``status``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from clientflow.webhooks.models import InboundEvent


class GateStatus(str, Enum):
    VERIFIED = "verified"
    INVALID = "invalid"
    EXPIRED = "expired"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class GateOutcome:
    status: GateStatus
    reason: str = ""
    event: InboundEvent | None = None

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.VERIFIED

    @classmethod
    def verified(cls, event: InboundEvent | None = None) -> GateOutcome:
        return cls(GateStatus.VERIFIED, event=event)

    @classmethod
    def invalid(cls, reason: str) -> GateOutcome:
        return cls(GateStatus.INVALID, reason=reason)

    @classmethod
    def expired(cls, reason: str, event: InboundEvent | None = None) -> GateOutcome:
        return cls(GateStatus.EXPIRED, reason=reason, event=event)

    @classmethod
    def duplicate(cls, event: InboundEvent) -> GateOutcome:
        return cls(
            GateStatus.DUPLICATE,
            reason="Duplicate event (already processed)",
            event=event,
        )
