"""Configuration health check for the provisioning services.

Reports which settings are present. Values are never included.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from clientflow.config import Settings

_REQUIRED: dict[str, tuple[str, ...]] = {
    "linear": ("linear_api_key", "linear_team_id"),
    "figma": ("figma_access_token", "figma_template_file_key"),
    "github": ("github_token", "github_org"),
    "email": ("resend_api_key", "resend_from_email"),
    "billing": ("stripe_webhook_secret",),
}


@dataclass
class ServiceCheck:
    service: str
    configured: bool
    missing: list[str] = field(default_factory=list)


@dataclass
class HealthReport:
    services: list[ServiceCheck]

    @property
    def ready(self) -> bool:
        return all(check.configured for check in self.services)

    def to_dict(self) -> dict:
        return {
            "ready": self.ready,
            "services": {
                check.service: {
                    "configured": check.configured,
                    "missing": [name.upper() for name in check.missing],
                }
                for check in self.services
            },
        }


def check_onboarding_services(settings: Settings) -> HealthReport:
    checks = []
    for service, fields in _REQUIRED.items():
        missing = [name for name in fields if not getattr(settings, name)]
        checks.append(ServiceCheck(service=service, configured=not missing, missing=missing))
    return HealthReport(services=checks)
