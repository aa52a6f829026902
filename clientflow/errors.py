"""Exception hierarchy for clientflow.

Boundary rejections (bad signature, stale event, duplicate delivery) are
not exceptions; see ``clientflow.webhooks.outcomes``. The classes here are
for failures inside business logic and external collaborators.
"""

from __future__ import annotations


class ClientflowError(Exception):
    """Base exception for clientflow errors."""

    pass


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------


class HandlerFailure(ClientflowError):
    """Raised when an event handler cannot complete its writes."""

    pass


class ClientNotFound(HandlerFailure):
    """Raised when no client row matches a billing customer id."""

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Client not found for customer ID: {customer_id}")
        self.customer_id = customer_id


class SubscriptionNotFound(HandlerFailure):
    """Raised when an update targets a subscription row that does not exist."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class LedgerUnavailable(ClientflowError):
    """Raised when the idempotency ledger cannot be reached."""

    pass


# ---------------------------------------------------------------------------
# Onboarding
# ---------------------------------------------------------------------------


class ProvisionError(ClientflowError):
    """Raised by a step executor when a provider call fails."""

    pass


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


class EmailProviderError(ClientflowError):
    """Permanent email provider failure (not retried)."""

    pass


class TransientEmailError(EmailProviderError):
    """Email provider failure that is safe to retry."""

    pass
