"""Notification service — preference check, throttle, render, send, log.

Pipeline per email:
1. Preferences (skipped for critical transactional types)
2. Per-recipient sliding-window rate limit
3. Render template
4. Log ``pending``
5. Provider call, retrying transient failures with exponential backoff
6. Log ``sent`` or terminal ``failed``

``send`` never raises: every path ends in a SendResult. Notification is
best-effort from the caller's point of view.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from clientflow.errors import TransientEmailError
from clientflow.notifications.delivery_log import DeliveryLogStore
from clientflow.notifications.models import EmailSpec, SendOutcome, SendResult
from clientflow.notifications.preferences import PreferenceStore, is_allowed
from clientflow.notifications.provider import EmailProvider
from clientflow.notifications.rate_limiter import RateLimiter
from clientflow.notifications.templates import render
from clientflow.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_RETRY_POLICY = RetryPolicy(
    max_retries=3, base_delay=1.0, multiplier=2.0, retry_on=(TransientEmailError,)
)


class NotificationService:
    def __init__(
        self,
        provider: EmailProvider,
        rate_limiter: RateLimiter,
        preferences: PreferenceStore,
        delivery_log: DeliveryLogStore,
        from_email: str,
        reply_to: str | None = None,
        brand_name: str = "Studio",
        retry_policy: RetryPolicy = DEFAULT_EMAIL_RETRY_POLICY,
        batch_concurrency: int = 5,
        test_mode: bool = False,
        test_recipient: str = "",
        subject_prefix: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._rate_limiter = rate_limiter
        self._preferences = preferences
        self._delivery_log = delivery_log
        self._from_email = from_email
        self._reply_to = reply_to
        self._brand_name = brand_name
        self._retry_policy = retry_policy
        self._batch_concurrency = batch_concurrency
        self._test_mode = test_mode
        self._test_recipient = test_recipient
        self._subject_prefix = subject_prefix
        self._sleep = sleep

    def _recipient_address(self, spec: EmailSpec) -> str:
        if self._test_mode and self._test_recipient:
            return self._test_recipient
        return spec.recipient.email

    async def send(self, spec: EmailSpec) -> SendResult:
        if not spec.critical and not await is_allowed(
            self._preferences, spec.recipient.user_id, spec.email_type
        ):
            logger.info(
                "User %s has opted out of %s emails", spec.recipient.user_id, spec.email_type
            )
            return SendResult(SendOutcome.OPTED_OUT, error="User has opted out of this email type")

        to = self._recipient_address(spec)
        if not await self._rate_limiter.hit(to):
            logger.warning("Email rate limit exceeded for %s", to)
            return SendResult(SendOutcome.RATE_LIMITED, error="Rate limit exceeded")

        try:
            rendered = render(spec, self._brand_name)
        except Exception as e:
            logger.error("Failed to render %s email: %s", spec.email_type, e)
            return SendResult(SendOutcome.FAILED, error=f"Template error: {e}")
        subject = f"{self._subject_prefix}{rendered.subject}"

        log_id = await self._delivery_log.create_pending(
            to,
            spec.email_type,
            {"recipient_name": spec.recipient.name, "subject": subject},
        )

        attempts = 0

        async def _attempt() -> str:
            nonlocal attempts
            attempts += 1
            return await self._provider.send(
                self._from_email, to, subject, rendered.html, self._reply_to
            )

        try:
            message_id = await retry_async(_attempt, self._retry_policy, sleep=self._sleep)
        except Exception as e:
            retries = min(attempts - 1, self._retry_policy.max_retries)
            logger.error(
                "Email %s to %s failed after %d attempt(s): %s", spec.email_type, to, attempts, e
            )
            await self._delivery_log.mark_failed(log_id, str(e), retries)
            return SendResult(SendOutcome.FAILED, error=str(e), attempts=attempts)

        await self._delivery_log.mark_sent(log_id, message_id, attempts - 1)
        logger.info("Email %s sent to %s (id=%s)", spec.email_type, to, message_id)
        return SendResult(SendOutcome.SENT, provider_message_id=message_id, attempts=attempts)

    async def send_batch(
        self, specs: Sequence[EmailSpec], concurrency: int | None = None
    ) -> list[SendResult]:
        """Send independent emails with bounded concurrency; results keep input order."""
        semaphore = asyncio.Semaphore(concurrency or self._batch_concurrency)

        async def _bounded(spec: EmailSpec) -> SendResult:
            async with semaphore:
                return await self.send(spec)

        return list(await asyncio.gather(*(_bounded(spec) for spec in specs)))
