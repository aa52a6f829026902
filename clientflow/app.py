"""FastAPI application and component wiring.

``build_*`` helpers assemble the production components from Settings;
``create_app`` accepts a prebuilt processor so tests can inject fakes.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from clientflow import __version__
from clientflow.config import Settings, get_settings
from clientflow.db import Database
from clientflow.errors import TransientEmailError
from clientflow.logging_config import configure_logging
from clientflow.notifications.delivery_log import PostgresDeliveryLogStore
from clientflow.notifications.preferences import PostgresPreferenceStore
from clientflow.notifications.provider import ResendProvider
from clientflow.notifications.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from clientflow.notifications.service import NotificationService
from clientflow.onboarding.alerts import AdminAlerter
from clientflow.onboarding.executors import (
    FigmaFileDuplicator,
    GitHubRepoCreator,
    LinearProjectCreator,
)
from clientflow.onboarding.orchestrator import OnboardingOrchestrator, PostgresRunStore
from clientflow.onboarding.steps import default_steps
from clientflow.retry import RetryPolicy
from clientflow.webhooks.billing_events import BillingEventHandlers, PostgresBillingStore
from clientflow.webhooks.dead_letter import PostgresDeadLetterRecorder
from clientflow.webhooks.dispatcher import EventDispatcher
from clientflow.webhooks.handlers import register_webhook_routes
from clientflow.webhooks.idempotency import PostgresIdempotencyLedger
from clientflow.webhooks.processor import WebhookProcessor

logger = logging.getLogger(__name__)


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.redis_url:
        return RedisRateLimiter.from_url(
            settings.redis_url, settings.email_rate_limit, settings.email_rate_window_seconds
        )
    return InMemoryRateLimiter(settings.email_rate_limit, settings.email_rate_window_seconds)


def build_notification_service(settings: Settings, db: Database) -> NotificationService:
    return NotificationService(
        provider=ResendProvider(settings.resend_api_key, settings.resend_api_url),
        rate_limiter=build_rate_limiter(settings),
        preferences=PostgresPreferenceStore(db),
        delivery_log=PostgresDeliveryLogStore(db),
        from_email=settings.resend_from_email,
        reply_to=settings.resend_reply_to_email,
        brand_name=settings.brand_name,
        retry_policy=RetryPolicy(
            max_retries=settings.email_max_retries,
            base_delay=settings.email_backoff_base_seconds,
            retry_on=(TransientEmailError,),
        ),
        batch_concurrency=settings.email_batch_concurrency,
        test_mode=settings.email_test_mode,
        test_recipient=settings.resend_admin_email,
        subject_prefix="[TEST] " if settings.app_env == "test" else "",
    )


def build_orchestrator(
    settings: Settings, db: Database, notifier: NotificationService
) -> OnboardingOrchestrator:
    timeout = settings.provider_http_timeout_seconds
    steps = default_steps(
        linear=LinearProjectCreator(settings.linear_api_key, settings.linear_team_id, timeout),
        figma=FigmaFileDuplicator(
            settings.figma_access_token,
            settings.figma_template_file_key,
            settings.figma_team_id,
            timeout,
        ),
        github=GitHubRepoCreator(settings.github_token, settings.github_org, timeout),
        notifier=notifier,
    )
    return OnboardingOrchestrator(
        steps,
        alerter=AdminAlerter(notifier, settings.admin_recipients),
        run_store=PostgresRunStore(db),
        step_timeout=settings.step_timeout_seconds,
    )


def build_dispatcher(settings: Settings, db: Database) -> EventDispatcher:
    notifier = build_notification_service(settings, db)
    orchestrator = build_orchestrator(settings, db, notifier)
    dispatcher = EventDispatcher()
    BillingEventHandlers(
        PostgresBillingStore(db),
        billing_portal_url=settings.billing_portal_url,
        onboard=orchestrator.run,
        notifier=notifier,
    ).register_all(dispatcher)
    return dispatcher


def build_processor(settings: Settings, db: Database | None = None) -> WebhookProcessor:
    db = db or Database(settings.database_url)
    return WebhookProcessor(
        secret=settings.stripe_webhook_secret,
        ledger=PostgresIdempotencyLedger(db),
        dispatcher=build_dispatcher(settings, db),
        dead_letters=PostgresDeadLetterRecorder(db),
        max_event_age_seconds=settings.webhook_max_event_age_seconds,
        slow_threshold_ms=settings.slow_processing_threshold_ms,
    )


def create_app(settings: Settings | None = None, processor: WebhookProcessor | None = None) -> FastAPI:
    settings = settings or get_settings()
    processor = processor or build_processor(settings)

    app = FastAPI(title="Clientflow Webhooks", version=__version__)
    register_webhook_routes(app, processor, settings)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


def main() -> FastAPI:
    """Uvicorn factory entry point: ``uvicorn clientflow.app:main --factory``."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger.info("Starting clientflow (env=%s)", settings.app_env)
    return create_app(settings)
