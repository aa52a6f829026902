"""Onboarding steps as data.

A ``Step`` is a name, an operator-facing label and an async callable.
The orchestrator iterates a list of steps; adding a provisioning step
means appending to that list, not touching failure handling.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from clientflow.notifications.models import EmailSpec, Recipient, SendResult
from clientflow.onboarding.executors import StepExecutor
from clientflow.onboarding.models import ClientOnboardingData, ContactInfo, StepResult


LINEAR_PROJECT = "linear_project"
FIGMA_FILE = "figma_file"
GITHUB_REPO = "github_repo"
WELCOME_EMAIL = "welcome_email"


@dataclass
class StepContext:
    """Shared state for one run. ``links`` holds URLs produced by earlier steps."""

    data: ClientOnboardingData
    links: dict[str, str] = field(default_factory=dict)

    def contact(self) -> ContactInfo:
        return ContactInfo.from_onboarding(self.data, self.links)


@dataclass(frozen=True)
class Step:
    name: str
    label: str
    execute: Callable[[StepContext], Awaitable[StepResult]]


def provision_step(name: str, label: str, executor: StepExecutor) -> Step:
    """Wrap a step executor; on success its URL is published to ``links[name]``."""

    async def _execute(ctx: StepContext) -> StepResult:
        result = await executor.create(ctx.data.company_name, ctx.contact())
        if not result.success:
            return StepResult(name, success=False, error=result.error or "Unknown error")
        if result.url:
            ctx.links[name] = result.url
        return StepResult(
            name,
            success=True,
            output_data={"id": result.identifier, "url": result.url},
        )

    return Step(name=name, label=label, execute=_execute)


class WelcomeSender(Protocol):
    async def send(self, spec: EmailSpec) -> SendResult: ...


def welcome_email_step(notifier: WelcomeSender) -> Step:
    """Send the welcome email with whichever links the earlier steps produced."""

    async def _execute(ctx: StepContext) -> StepResult:
        data = ctx.data
        spec = EmailSpec(
            email_type="client_welcome",
            recipient=Recipient(email=data.email, user_id=data.client_id, name=data.first_name),
            context={
                "company_name": data.company_name,
                "first_name": data.first_name,
                "linear_project_url": ctx.links.get(LINEAR_PROJECT),
                "figma_file_url": ctx.links.get(FIGMA_FILE),
                "repo_url": ctx.links.get(GITHUB_REPO),
                "billing_portal_url": data.billing_portal_url,
            },
        )
        result = await notifier.send(spec)
        if not result.success:
            return StepResult(WELCOME_EMAIL, success=False, error=result.error or result.outcome.value)
        return StepResult(
            WELCOME_EMAIL,
            success=True,
            output_data={"email_id": result.provider_message_id},
        )

    return Step(name=WELCOME_EMAIL, label="Welcome email", execute=_execute)


def default_steps(
    linear: StepExecutor,
    figma: StepExecutor,
    github: StepExecutor,
    notifier: WelcomeSender,
) -> list[Step]:
    """Project, then design file, then repository, then welcome email."""
    return [
        provision_step(LINEAR_PROJECT, "Linear project", linear),
        provision_step(FIGMA_FILE, "Figma file", figma),
        provision_step(GITHUB_REPO, "GitHub repo", github),
        welcome_email_step(notifier),
    ]
