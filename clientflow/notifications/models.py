"""Notification data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Transactional emails that bypass preference checks
CRITICAL_EMAIL_TYPES = frozenset({"client_welcome", "onboarding_alert"})


@dataclass(frozen=True)
class Recipient:
    email: str
    user_id: str | None = None
    name: str = ""


@dataclass
class EmailSpec:
    """One email to send: a template type, a recipient, and template context."""

    email_type: str
    recipient: Recipient
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def critical(self) -> bool:
        return self.email_type in CRITICAL_EMAIL_TYPES


class SendOutcome(str, Enum):
    SENT = "sent"
    OPTED_OUT = "opted_out"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class SendResult:
    """Result of one send. Opt-out and rate limiting are not errors."""

    outcome: SendOutcome
    provider_message_id: str | None = None
    error: str | None = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.outcome is SendOutcome.SENT


@dataclass
class RenderedEmail:
    subject: str
    html: str


@dataclass
class EmailDeliveryLog:
    recipient: str
    email_type: str
    status: str = "pending"  # pending | sent | failed
    provider_message_id: str | None = None
    error: str | None = None
    retry_count: int = 0
    sent_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


@dataclass
class EmailPreference:
    """Per-user opt-in flags. A missing row means everything is allowed."""

    user_id: str
    email_enabled: bool = True
    category_flags: dict[str, bool] = field(default_factory=dict)

    def allows(self, category: str | None) -> bool:
        if not self.email_enabled:
            return False
        if category is None:
            return True
        return self.category_flags.get(category, True)
