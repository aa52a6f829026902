"""Admin alerting for onboarding runs with failed steps."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Protocol

from clientflow.notifications.models import EmailSpec, Recipient, SendResult
from clientflow.onboarding.models import ClientOnboardingData, OnboardingRun

logger = logging.getLogger(__name__)


class BatchSender(Protocol):
    async def send_batch(self, specs: list[EmailSpec]) -> list[SendResult]: ...


class AdminAlerter:
    """Log the failed run and email every admin. Never raises."""

    def __init__(self, notifier: BatchSender | None, recipients: list[str]):
        self._notifier = notifier
        self._recipients = recipients

    async def alert(self, run: OnboardingRun, data: ClientOnboardingData) -> None:
        errors = run.errors
        logger.warning(
            "ADMIN_ALERT onboarding failures=%d company=%s email=%s client=%s errors=%s",
            len(errors),
            data.company_name,
            data.email,
            data.client_id,
            "; ".join(errors),
        )
        if self._notifier is None or not self._recipients:
            return

        context = {
            "company_name": data.company_name,
            "email": data.email,
            "client_id": data.client_id,
            "triggering_event_id": run.triggering_event_id,
            "errors": errors,
            "steps": [asdict(step) for step in run.steps],
        }
        specs = [
            EmailSpec(email_type="onboarding_alert", recipient=Recipient(email=addr), context=context)
            for addr in self._recipients
        ]
        try:
            results = await self._notifier.send_batch(specs)
        except Exception:
            logger.exception("Failed to send onboarding alert emails")
            return
        failed = [addr for addr, r in zip(self._recipients, results) if not r.success]
        if failed:
            logger.error("Onboarding alert not delivered to: %s", ", ".join(failed))
