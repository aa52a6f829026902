"""Tests for the notification service, email provider, templates and admin alerts."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from clientflow.errors import EmailProviderError, TransientEmailError
from clientflow.notifications.models import (
    EmailPreference,
    EmailSpec,
    Recipient,
    SendOutcome,
    SendResult,
)
from clientflow.notifications.preferences import category_for
from clientflow.notifications.provider import ResendProvider
from clientflow.notifications.rate_limiter import InMemoryRateLimiter
from clientflow.notifications.service import NotificationService
from clientflow.notifications.templates import render
from clientflow.onboarding.alerts import AdminAlerter
from clientflow.onboarding.models import ClientOnboardingData, OnboardingRun, StepResult
from fakes import (
    InMemoryDeliveryLog,
    InMemoryPreferences,
    RecordingSleep,
    ScriptedProvider,
)


def _welcome(email: str = "ada@acme.test", user_id: str | None = "client-1") -> EmailSpec:
    return EmailSpec(
        "client_welcome",
        Recipient(email, user_id=user_id, name="Ada"),
        {"company_name": "Acme Corp", "linear_project_url": "https://linear.test/p1"},
    )


def _payment_failed(user_id: str = "client-1") -> EmailSpec:
    return EmailSpec(
        "payment_failed",
        Recipient("ada@acme.test", user_id=user_id, name="Ada"),
        {"company_name": "Acme Corp", "amount_due": 499500, "currency": "usd"},
    )


def _service(provider=None, preferences=None, rate_limiter=None, sleep=None, **kwargs):
    log = InMemoryDeliveryLog()
    service = NotificationService(
        provider=provider or ScriptedProvider(),
        rate_limiter=rate_limiter or InMemoryRateLimiter(),
        preferences=preferences or InMemoryPreferences(),
        delivery_log=log,
        from_email="hello@studio.test",
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )
    return service, log


class TestRetry:
    @pytest.mark.asyncio
    async def test_transient_failures_stop_after_four_attempts(self):
        provider = ScriptedProvider(default=TransientEmailError("HTTP 503"))
        sleep = RecordingSleep()
        service, log = _service(provider, sleep=sleep)

        result = await service.send(_welcome())

        assert result.outcome is SendOutcome.FAILED
        assert result.attempts == 4
        assert len(provider.calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        entry = log.entries[1]
        assert entry["status"] == "failed"
        assert entry["retry_count"] == 3

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        provider = ScriptedProvider([TransientEmailError("HTTP 429"), "msg_42"])
        service, log = _service(provider)

        result = await service.send(_welcome())

        assert result.success
        assert result.provider_message_id == "msg_42"
        assert log.entries[1]["status"] == "sent"
        assert log.entries[1]["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        provider = ScriptedProvider([EmailProviderError("HTTP 422: invalid from")])
        service, log = _service(provider)

        result = await service.send(_welcome())

        assert result.outcome is SendOutcome.FAILED
        assert len(provider.calls) == 1
        assert log.entries[1]["retry_count"] == 0


class TestPreferences:
    @pytest.mark.asyncio
    async def test_opted_out_user_is_skipped(self):
        prefs = InMemoryPreferences({"client-1": EmailPreference("client-1", email_enabled=False)})
        provider = ScriptedProvider()
        service, log = _service(provider, preferences=prefs)

        result = await service.send(_payment_failed())

        assert result.outcome is SendOutcome.OPTED_OUT
        assert provider.calls == []
        assert log.entries == {}

    @pytest.mark.asyncio
    async def test_category_opt_out(self):
        prefs = InMemoryPreferences(
            {"client-1": EmailPreference("client-1", category_flags={"billing": False})}
        )
        service, _ = _service(preferences=prefs)
        result = await service.send(_payment_failed())
        assert result.outcome is SendOutcome.OPTED_OUT

    @pytest.mark.asyncio
    async def test_critical_email_bypasses_preferences(self):
        prefs = InMemoryPreferences({"client-1": EmailPreference("client-1", email_enabled=False)})
        service, _ = _service(preferences=prefs)
        result = await service.send(_welcome())
        assert result.success

    @pytest.mark.asyncio
    async def test_preference_lookup_error_fails_open(self):
        service, _ = _service(preferences=InMemoryPreferences(raises=ConnectionError("db down")))
        result = await service.send(_payment_failed())
        assert result.success

    def test_category_mapping(self):
        assert category_for("payment_failed") == "billing"
        assert category_for("sla_warning_24h") is None
        assert category_for("client_welcome") is None


class TestThrottleAndTestMode:
    @pytest.mark.asyncio
    async def test_rate_limit_per_recipient(self):
        service, _ = _service(rate_limiter=InMemoryRateLimiter(limit=2))

        results = [await service.send(_welcome()) for _ in range(3)]
        other = await service.send(_welcome(email="grace@acme.test"))

        assert [r.outcome for r in results] == [
            SendOutcome.SENT,
            SendOutcome.SENT,
            SendOutcome.RATE_LIMITED,
        ]
        assert other.success

    @pytest.mark.asyncio
    async def test_test_mode_redirects_and_prefixes(self):
        provider = ScriptedProvider()
        service, log = _service(
            provider,
            test_mode=True,
            test_recipient="admin@studio.test",
            subject_prefix="[TEST] ",
        )

        await service.send(_welcome())

        call = provider.calls[0]
        assert call["to"] == "admin@studio.test"
        assert call["subject"] == "[TEST] Welcome to Studio, Acme Corp!"
        assert log.entries[1]["recipient"] == "admin@studio.test"

    @pytest.mark.asyncio
    async def test_unknown_template_fails_without_sending(self):
        provider = ScriptedProvider()
        service, _ = _service(provider)
        result = await service.send(EmailSpec("nope", Recipient("a@b.test")))
        assert result.outcome is SendOutcome.FAILED
        assert result.error.startswith("Template error")
        assert provider.calls == []


class TestBatch:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        provider = ScriptedProvider(["m1", EmailProviderError("bad"), "m3"])
        service, _ = _service(provider)
        specs = [_welcome(email=f"u{i}@acme.test") for i in range(3)]

        results = await service.send_batch(specs)

        assert [r.outcome for r in results] == [
            SendOutcome.SENT,
            SendOutcome.FAILED,
            SendOutcome.SENT,
        ]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        class SlowProvider:
            async def send(self, from_, to, subject, html, reply_to=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return "msg"

        service, _ = _service(SlowProvider())
        specs = [_welcome(email=f"u{i}@acme.test") for i in range(8)]

        results = await service.send_batch(specs, concurrency=3)

        assert all(r.success for r in results)
        assert peak <= 3


class TestTemplates:
    def test_values_are_escaped(self):
        spec = EmailSpec(
            "client_welcome",
            Recipient("a@b.test", name="<script>alert(1)</script>"),
            {"company_name": "Acme & Sons"},
        )
        rendered = render(spec, "Studio")
        assert "<script>" not in rendered.html
        assert "&lt;script&gt;" in rendered.html
        assert "Acme &amp; Sons" in rendered.html

    def test_missing_link_shows_placeholder(self):
        rendered = render(_welcome(), "Studio")
        assert 'href="https://linear.test/p1"' in rendered.html
        assert "still setting this up" in rendered.html

    def test_payment_amount_in_major_units(self):
        rendered = render(_payment_failed(), "Studio")
        assert rendered.subject == "Action needed: payment failed"
        assert "4995.00 USD" in rendered.html

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            render(EmailSpec("nope", Recipient("a@b.test")), "Studio")


class TestResendProvider:
    async def _send(self, handler) -> str:
        provider = ResendProvider("re_key", transport=httpx.MockTransport(handler))
        return await provider.send("from@studio.test", "to@acme.test", "Hi", "<p>hi</p>")

    @pytest.mark.asyncio
    async def test_success_returns_message_id(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            return httpx.Response(200, json={"id": "msg_1"})

        assert await self._send(handler) == "msg_1"
        assert seen == {"auth": "Bearer re_key", "path": "/emails"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status):
        with pytest.raises(TransientEmailError):
            await self._send(lambda r: httpx.Response(status))

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        with pytest.raises(EmailProviderError) as excinfo:
            await self._send(lambda r: httpx.Response(400, text="bad request"))
        assert not isinstance(excinfo.value, TransientEmailError)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("timeout", request=request)

        with pytest.raises(TransientEmailError):
            await self._send(handler)

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(EmailProviderError, match="RESEND_API_KEY"):
            await ResendProvider("").send("f", "t", "s", "h")


class TestAdminAlerter:
    DATA = ClientOnboardingData(
        client_id="client-1",
        company_name="Acme Corp",
        first_name="Ada",
        last_name="Lovelace",
        email="ada@acme.test",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        billing_portal_url="",
    )

    def _run(self) -> OnboardingRun:
        run = OnboardingRun(client_id="client-1", triggering_event_id="evt_1")
        run.steps = [StepResult("github_repo", False, error="API rate limited")]
        run.labels = {"github_repo": "GitHub repo"}
        return run

    @pytest.mark.asyncio
    async def test_emails_every_admin(self, caplog):
        sent = []

        class Batch:
            async def send_batch(self, specs):
                sent.extend(specs)
                return [SendResult(SendOutcome.SENT) for _ in specs]

        alerter = AdminAlerter(Batch(), ["ops@studio.test", "cto@studio.test"])
        await alerter.alert(self._run(), self.DATA)

        assert [s.recipient.email for s in sent] == ["ops@studio.test", "cto@studio.test"]
        assert all(s.email_type == "onboarding_alert" for s in sent)
        assert sent[0].context["errors"] == ["GitHub repo: API rate limited"]
        assert any("ADMIN_ALERT" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_send_failure_never_raises(self):
        class Broken:
            async def send_batch(self, specs):
                raise RuntimeError("provider down")

        await AdminAlerter(Broken(), ["ops@studio.test"]).alert(self._run(), self.DATA)
