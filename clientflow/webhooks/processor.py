"""Webhook processing pipeline: verify -> parse -> freshness -> claim -> dispatch.

Each gate must pass before the next runs. Response codes:

    invalid signature / payload   400
    expired event                 400
    duplicate delivery            200, processed=False
    ledger unreachable            503 (provider redelivers later)
    handler failure               200, processed=False, dead-lettered
    success                       200, processed=True

Handler failures return 200 so the provider does not start a retry storm;
the dead letter and the ledger outcome are the record of what failed.
"""

from __future__ import annotations

import logging
import time

from clientflow.errors import HandlerFailure, LedgerUnavailable
from clientflow.webhooks.dead_letter import DeadLetterRecorder
from clientflow.webhooks.dispatcher import EventDispatcher
from clientflow.webhooks.idempotency import (
    OUTCOME_FAILED,
    OUTCOME_PROCESSED,
    IdempotencyLedger,
)
from clientflow.webhooks.models import InboundEvent, ProcessingResult
from clientflow.webhooks.outcomes import GateOutcome
from clientflow.webhooks.replay import DEFAULT_MAX_EVENT_AGE_SECONDS, check_freshness
from clientflow.webhooks.verification import verify_and_parse

logger = logging.getLogger(__name__)

HANDLER_FAILED_MESSAGE = "Event received but processing failed; recorded for replay"


class WebhookProcessor:
    """Runs one webhook delivery through the intake gates and its handler."""

    def __init__(
        self,
        secret: str,
        ledger: IdempotencyLedger,
        dispatcher: EventDispatcher,
        dead_letters: DeadLetterRecorder,
        max_event_age_seconds: int = DEFAULT_MAX_EVENT_AGE_SECONDS,
        slow_threshold_ms: int = 3000,
    ):
        self._secret = secret
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._dead_letters = dead_letters
        self._max_event_age_seconds = max_event_age_seconds
        self._slow_threshold_ms = slow_threshold_ms

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    async def process(self, body: bytes, signature_header: str | None) -> ProcessingResult:
        started = time.monotonic()
        result = await self._process(body, signature_header)
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        if result.processing_time_ms > self._slow_threshold_ms:
            logger.warning(
                "Slow webhook processing: %dms (threshold %dms) - %s",
                result.processing_time_ms,
                self._slow_threshold_ms,
                result.message,
            )
        return result

    async def _process(self, body: bytes, signature_header: str | None) -> ProcessingResult:
        outcome = verify_and_parse(body, signature_header, self._secret)
        if not outcome.passed:
            logger.warning("Rejected webhook: %s", outcome.reason)
            return ProcessingResult(400, processed=False, message=outcome.reason)
        event = outcome.event

        outcome = check_freshness(event, self._max_event_age_seconds)
        if not outcome.passed:
            return ProcessingResult(400, processed=False, message=outcome.reason)

        try:
            claim = await self._ledger.claim(event)
        except LedgerUnavailable:
            return ProcessingResult(503, processed=False, message="Idempotency ledger unavailable")
        if not claim.claimed:
            outcome = GateOutcome.duplicate(event)
            return ProcessingResult(200, processed=False, message=outcome.reason)

        return await self._dispatch(event)

    async def _dispatch(self, event: InboundEvent) -> ProcessingResult:
        try:
            handled = await self._dispatcher.dispatch(event)
            if not handled.success:
                raise HandlerFailure(handled.message)
        except Exception as exc:
            logger.error("Handler for %s (%s) failed: %s", event.type, event.id, exc)
            await self._dead_letters.record(event.id, event.type, exc, event.payload)
            await self._ledger.record_outcome(event.id, OUTCOME_FAILED)
            return ProcessingResult(200, processed=False, message=HANDLER_FAILED_MESSAGE)

        await self._ledger.record_outcome(event.id, OUTCOME_PROCESSED)
        logger.info("Processed webhook %s (%s): %s", event.type, event.id, handled.message)
        return ProcessingResult(200, processed=True, message=handled.message)
