"""Webhook HTTP handlers — FastAPI routes for the billing webhook.

The route:
1. Reads the raw body (needed for HMAC verification)
2. Hands body + Stripe-Signature header to the WebhookProcessor
3. Returns ``{processed, message, processingTimeMs}`` with the processor's status

Security contract:
- Never return stack traces or handler error details to the caller
- Only POST is accepted; other methods get 405
- The health route reports configuration booleans only, never secrets
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clientflow.config import Settings
from clientflow.onboarding.health import check_onboarding_services
from clientflow.webhooks.processor import WebhookProcessor
from clientflow.webhooks.verification import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/stripe"


def _log_webhook(status_code: int, processed: bool, elapsed_ms: int) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=stripe status=%d processed=%s elapsed_ms=%d",
        status_code,
        processed,
        elapsed_ms,
    )


def register_webhook_routes(app: FastAPI, processor: WebhookProcessor, settings: Settings) -> None:
    """Register the webhook endpoint and the onboarding health check."""

    @app.post(WEBHOOK_PATH)
    async def stripe_webhook(request: Request):
        """Receive Stripe webhooks (signature-verified)."""
        body = await request.body()
        result = await processor.process(body, request.headers.get(SIGNATURE_HEADER))
        _log_webhook(result.status_code, result.processed, result.processing_time_ms)
        return JSONResponse(result.to_body(), status_code=result.status_code)

    @app.api_route(WEBHOOK_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
    async def stripe_webhook_method_not_allowed():
        return JSONResponse({"error": "Method not allowed"}, status_code=405)

    @app.get("/health/onboarding")
    async def onboarding_health():
        """Which provisioning services are configured."""
        report = check_onboarding_services(settings)
        return JSONResponse(report.to_dict(), status_code=200 if report.ready else 503)

    logger.info("Webhook routes registered: %s", WEBHOOK_PATH)
