"""Clientflow configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the webhook and onboarding services."""

    app_env: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"  # json | console

    # Webhook intake
    stripe_webhook_secret: str = ""
    stripe_secret_key: str = ""
    webhook_max_event_age_seconds: int = 300
    slow_processing_threshold_ms: int = 3000

    # Storage
    database_url: str = "postgresql://localhost:5432/clientflow"
    redis_url: str = ""  # empty -> in-process rate limiter

    # Notifications
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com"
    resend_from_email: str = "Studio <notifications@example.com>"
    resend_reply_to_email: str = "support@example.com"
    resend_admin_email: str = "admin@example.com"
    admin_alert_emails: str = ""  # comma separated; falls back to resend_admin_email
    email_test_mode: bool = False
    email_rate_limit: int = 100
    email_rate_window_seconds: float = 60.0
    email_max_retries: int = 3
    email_backoff_base_seconds: float = 1.0
    email_batch_concurrency: int = 5
    brand_name: str = "Studio"

    # Onboarding
    step_timeout_seconds: float = 30.0
    provider_http_timeout_seconds: float = 20.0
    billing_portal_url: str = "https://billing.stripe.com/p/login"
    linear_api_key: str = ""
    linear_team_id: str = ""
    figma_access_token: str = ""
    figma_template_file_key: str = ""
    figma_team_id: str = ""
    github_token: str = ""
    github_org: str = ""

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def admin_recipients(self) -> list[str]:
        """Addresses that receive onboarding failure alerts."""
        emails = [e.strip() for e in self.admin_alert_emails.split(",") if e.strip()]
        return emails or [self.resend_admin_email]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
