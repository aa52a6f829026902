"""Tests for the webhook pipeline: gate ordering, idempotency, dead-lettering.

Scenarios:
- evt_123 subscription.created: handler runs, client active, onboarding runs all steps
- Same evt_123 redelivered: duplicate, no second onboarding run
- Concurrent deliveries of one event: exactly one processed
- Handler failure: dead letter + 200 processed=False
"""

from __future__ import annotations

import asyncio
import logging
import time

import pytest

from clientflow.onboarding.orchestrator import OnboardingOrchestrator
from clientflow.onboarding.steps import default_steps
from clientflow.webhooks.billing_events import BillingEventHandlers
from clientflow.webhooks.dispatcher import EventDispatcher
from clientflow.webhooks.models import HandlerResult
from clientflow.webhooks.processor import HANDLER_FAILED_MESSAGE, WebhookProcessor
from fakes import (
    FakeExecutor,
    InMemoryBillingStore,
    InMemoryDeadLetters,
    InMemoryLedger,
    InMemoryRunStore,
    RecordingAlerter,
    RecordingNotifier,
)
from payloads import WEBHOOK_SECRET, event_body, sign, subscription_object


class CountingHandler:
    def __init__(self, raises: Exception | None = None, delay: float = 0.0):
        self.calls = 0
        self.raises = raises
        self.delay = delay

    async def __call__(self, event) -> HandlerResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        return HandlerResult(success=True, message="handled")


def _processor(handler=None, ledger=None, dead_letters=None, slow_threshold_ms=3000):
    dispatcher = EventDispatcher()
    if handler is not None:
        dispatcher.register("customer.subscription.created", handler)
    return WebhookProcessor(
        secret=WEBHOOK_SECRET,
        ledger=ledger or InMemoryLedger(),
        dispatcher=dispatcher,
        dead_letters=dead_letters or InMemoryDeadLetters(),
        slow_threshold_ms=slow_threshold_ms,
    )


class TestGates:
    @pytest.mark.asyncio
    async def test_invalid_signature_is_400_and_never_claims(self):
        ledger = InMemoryLedger()
        handler = CountingHandler()
        body = event_body()
        result = await _processor(handler, ledger).process(body, "t=1,v1=bad")
        assert result.status_code == 400
        assert result.processed is False
        assert ledger.records == {}
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_expired_event_is_400_and_never_claims(self):
        ledger = InMemoryLedger()
        body = event_body(created=int(time.time()) - 301)
        result = await _processor(CountingHandler(), ledger).process(body, sign(body))
        assert result.status_code == 400
        assert ledger.records == {}

    @pytest.mark.asyncio
    async def test_malformed_payload_is_400(self):
        body = b'{"hello": "world"}'
        result = await _processor().process(body, sign(body))
        assert result.status_code == 400
        assert result.message == "Invalid payload"

    @pytest.mark.asyncio
    async def test_ledger_unavailable_is_503_without_side_effects(self):
        handler = CountingHandler()
        body = event_body()
        result = await _processor(handler, InMemoryLedger(unavailable=True)).process(body, sign(body))
        assert result.status_code == 503
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_success(self):
        body = event_body(event_type="customer.created")
        result = await _processor().process(body, sign(body))
        assert result.status_code == 200
        assert result.processed is True
        assert result.message == "Event type customer.created not handled"

    @pytest.mark.asyncio
    async def test_response_body_shape(self):
        body = event_body()
        result = await _processor(CountingHandler()).process(body, sign(body))
        assert set(result.to_body()) == {"processed", "message", "processingTimeMs"}
        assert result.processing_time_ms >= 0


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_sequential_redelivery_is_duplicate(self):
        ledger = InMemoryLedger()
        handler = CountingHandler()
        processor = _processor(handler, ledger)
        body = event_body()

        first = await processor.process(body, sign(body))
        second = await processor.process(body, sign(body))

        assert first.processed is True
        assert second.status_code == 200
        assert second.processed is False
        assert "Duplicate event" in second.message
        assert handler.calls == 1
        assert len(ledger.records) == 1
        assert ledger.records["evt_123"].outcome == "processed"

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_process_once(self):
        handler = CountingHandler(delay=0.01)
        processor = _processor(handler)
        body = event_body()

        results = await asyncio.gather(*(processor.process(body, sign(body)) for _ in range(10)))

        assert sum(1 for r in results if r.processed) == 1
        assert all(r.status_code == 200 for r in results)
        assert handler.calls == 1


class TestHandlerFailure:
    @pytest.mark.asyncio
    async def test_exception_is_dead_lettered_with_200(self):
        ledger = InMemoryLedger()
        dead = InMemoryDeadLetters()
        body = event_body(obj={"id": "sub_1"})
        processor = _processor(CountingHandler(raises=RuntimeError("db write failed")), ledger, dead)

        result = await processor.process(body, sign(body))

        assert result.status_code == 200
        assert result.processed is False
        assert result.message == HANDLER_FAILED_MESSAGE
        assert "db write failed" not in result.message
        assert len(dead.records) == 1
        record = dead.records[0]
        assert record.event_id == "evt_123"
        assert record.error_message == "db write failed"
        assert record.payload_snapshot == {"id": "sub_1"}
        assert ledger.records["evt_123"].outcome == "failed"

    @pytest.mark.asyncio
    async def test_failed_event_redelivery_is_still_duplicate(self):
        handler = CountingHandler(raises=RuntimeError("boom"))
        processor = _processor(handler)
        body = event_body()
        await processor.process(body, sign(body))
        second = await processor.process(body, sign(body))
        assert second.processed is False
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_signature_failure_not_dead_lettered(self):
        dead = InMemoryDeadLetters()
        await _processor(CountingHandler(), dead_letters=dead).process(event_body(), None)
        assert dead.records == []


@pytest.mark.asyncio
async def test_slow_processing_logged(caplog):
    body = event_body()
    processor = _processor(CountingHandler(delay=0.01), slow_threshold_ms=0)
    with caplog.at_level(logging.WARNING, logger="clientflow.webhooks.processor"):
        await processor.process(body, sign(body))
    assert any("Slow webhook processing" in r.getMessage() for r in caplog.records)


class TestSubscriptionCreatedScenario:
    """End-to-end: billing handler plus onboarding with in-memory collaborators."""

    def _wire(self):
        store = InMemoryBillingStore()
        store.add_client("client-1", "cus_1", company_name="Acme Corp")
        notifier = RecordingNotifier()
        executors = [FakeExecutor(), FakeExecutor(), FakeExecutor()]
        run_store = InMemoryRunStore()
        orchestrator = OnboardingOrchestrator(
            default_steps(*executors, notifier=notifier),
            alerter=RecordingAlerter(),
            run_store=run_store,
        )
        dispatcher = EventDispatcher()
        BillingEventHandlers(
            store, billing_portal_url="https://billing.test", onboard=orchestrator.run
        ).register_all(dispatcher)
        processor = WebhookProcessor(
            secret=WEBHOOK_SECRET,
            ledger=InMemoryLedger(),
            dispatcher=dispatcher,
            dead_letters=InMemoryDeadLetters(),
        )
        return processor, store, executors, notifier, run_store

    @pytest.mark.asyncio
    async def test_evt_123_created_then_redelivered(self):
        processor, store, executors, notifier, run_store = self._wire()
        body = event_body(obj=subscription_object())

        first = await processor.process(body, sign(body))

        assert first.status_code == 200
        assert first.processed is True
        assert store.state.clients["client-1"]["status"] == "active"
        assert "sub_1" in store.state.subscriptions
        assert len(run_store.runs) == 1
        run = run_store.runs[0]
        assert run.triggering_event_id == "evt_123"
        assert [s.step_name for s in run.steps] == [
            "linear_project",
            "figma_file",
            "github_repo",
            "welcome_email",
        ]
        assert all(len(e.calls) == 1 for e in executors)
        assert [s.email_type for s in notifier.sent] == ["client_welcome"]

        # Redelivered ten seconds later
        second = await processor.process(body, sign(body, timestamp=int(time.time()) + 10))

        assert second.processed is False
        assert "Duplicate event" in second.message
        assert len(run_store.runs) == 1
        assert len(notifier.sent) == 1
